"""Product mapping lookup (read-only; mappings are maintained by the admin service)"""
import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from payhook.models.product_mapping import ProductMapping

logger = logging.getLogger(__name__)


def get_mapping(db: Session, product_id: Optional[str], product_name: Optional[str] = None) -> Optional[ProductMapping]:
    """Look up by provider product id, then by case-insensitive product name"""
    if product_id:
        mapping = db.query(ProductMapping).filter(ProductMapping.provider_product_id == product_id).first()
        if mapping:
            return mapping
    if product_name:
        mapping = (
            db.query(ProductMapping)
            .filter(func.lower(ProductMapping.product_name) == product_name.strip().lower())
            .first()
        )
        if mapping:
            logger.info(f"Resolved product '{product_name}' by name (id {product_id} not mapped)")
            return mapping
    return None
