"""payhook - provider webhook ingestion and billing reconciliation"""
__version__ = "1.0.0"
