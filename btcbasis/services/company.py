"""
btcbasis/services/company.py

Tenant records. Routers call get_company() before touching any lot or
transaction so a missing company is a 404 rather than an empty result.
"""

import logging
from sqlalchemy.orm import Session

from btcbasis.models.company import Company

logger = logging.getLogger(__name__)


def create_company(db: Session, name: str) -> Company:
    company = Company(name=name.strip())
    db.add(company)
    db.commit()
    db.refresh(company)
    logger.info(f"Created company id={company.id} name='{company.name}'")
    return company


def get_company(db: Session, company_id: int):
    """
    Return the Company with the specified ID, or None if it doesn't exist.
    """
    return db.get(Company, company_id)


def get_all_companies(db: Session):
    return db.query(Company).order_by(Company.id).all()
