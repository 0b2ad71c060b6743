"""Pydantic schemas for the finance admin surface"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class FinanceSummary(BaseModel):
    total_payments: int
    paid_count: int
    pending_count: int
    refunded_count: int
    chargeback_count: int
    gross_revenue: str
    refunded_amount: str
    active_subscriptions: int
    events_pending: int
    events_failed: int


class DiscrepancyReport(BaseModel):
    window_days: int
    generated_at: datetime
    paymentsWithoutEvent: List[Dict[str, Any]]
    eventsWithoutPayment: List[Dict[str, Any]]
    statusMismatch: List[Dict[str, Any]]
    unidentifiedEvents: List[Dict[str, Any]]
    total: int


class ProcessingStats(BaseModel):
    window_days: int
    total: int
    pending: int
    processed: int
    failed: int
    unidentified: int
    success_rate: float


class RepairResult(BaseModel):
    success: bool
    message: str
    eventId: str
    previous_status: Optional[str] = None
    status: Optional[str] = None
    payment: Optional[Dict[str, Any]] = None


class Page(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    page: int
    page_size: int
