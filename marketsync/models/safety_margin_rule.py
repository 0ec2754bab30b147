from sqlalchemy import Column, DateTime, Enum as SQLEnum, Integer, Numeric, String, UniqueConstraint, Uuid

from marketsync.core.enums import Marketplace, RuleScope
from marketsync.core.utils import utc_now
from marketsync.database import Base


def build_scope_key(product_id=None, category_id=None) -> str:
    """One string per exact scope so uniqueness can be enforced by the database."""
    if product_id is not None:
        return f"product:{product_id}"
    if category_id is not None:
        return f"category:{category_id}"
    return "global"


class SafetyMarginRule(Base):
    __tablename__ = "safety_margin_rules"
    __table_args__ = (
        UniqueConstraint("tenant_id", "marketplace", "scope_key", name="uq_safety_margin_scope"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Uuid, nullable=False, index=True)
    marketplace = Column(SQLEnum(Marketplace, native_enum=False, length=32), nullable=False)
    product_id = Column(Uuid, nullable=True, index=True)
    category_id = Column(Uuid, nullable=True, index=True)
    priority = Column(Integer, nullable=False)  # RuleScope value
    margin_percentage = Column(Numeric(5, 2), nullable=False)
    scope_key = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    @property
    def scope(self) -> RuleScope:
        return RuleScope(self.priority)

    def __repr__(self):
        return f"<SafetyMarginRule(id={self.id}, scope={self.scope_key}, margin={self.margin_percentage})>"
