"""
Safety margin rules: which share of available stock a marketplace may see.

Rules are resolved through an ordered chain (product, then category, then
global); the first scope with a rule wins outright. With no rule at all the
margin is 100%, i.e. the full available quantity is published.
"""

import logging
import uuid
from decimal import ROUND_FLOOR, Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.core.config import get_settings
from marketsync.core.enums import Marketplace, RuleScope, SyncPriority, SyncType
from marketsync.core.exceptions import DuplicateRuleError, RuleNotFoundError, ValidationError
from marketsync.integrations.collaborators import CatalogProvider
from marketsync.models.safety_margin_rule import SafetyMarginRule, build_scope_key
from marketsync.services import listing_registry, sync_queue

logger = logging.getLogger(__name__)

DEFAULT_MARGIN = Decimal("100")
_HUNDRED = Decimal("100")


def published_quantity(available, margin) -> int:
    """floor(available * margin / 100), with negative availability treated as zero."""
    available = max(Decimal(str(available)), Decimal("0"))
    margin = Decimal(str(margin))
    return int((available * margin / _HUNDRED).to_integral_value(rounding=ROUND_FLOOR))


class SafetyMarginResolver:
    def __init__(self, db: AsyncSession, catalog: Optional[CatalogProvider] = None, settings=None):
        self.db = db
        self.catalog = catalog
        self.settings = settings or get_settings()
        # Tried in order; the first resolver returning a rule wins
        self._cascade = (self._product_rule, self._category_rule, self._global_rule)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    async def _find(self, tenant_id, marketplace, scope_key: str) -> Optional[SafetyMarginRule]:
        stmt = select(SafetyMarginRule).where(
            SafetyMarginRule.tenant_id == tenant_id,
            SafetyMarginRule.marketplace == Marketplace(marketplace),
            SafetyMarginRule.scope_key == scope_key,
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def _product_rule(self, tenant_id, marketplace, product_id, category_id):
        if product_id is None:
            return None
        return await self._find(tenant_id, marketplace, build_scope_key(product_id=product_id))

    async def _category_rule(self, tenant_id, marketplace, product_id, category_id):
        if category_id is None:
            return None
        return await self._find(tenant_id, marketplace, build_scope_key(category_id=category_id))

    async def _global_rule(self, tenant_id, marketplace, product_id, category_id):
        return await self._find(tenant_id, marketplace, build_scope_key())

    async def resolve_rule(self, tenant_id: uuid.UUID, marketplace: Marketplace,
                           product_id: Optional[uuid.UUID],
                           category_id: Optional[uuid.UUID]) -> Optional[SafetyMarginRule]:
        for resolver in self._cascade:
            rule = await resolver(tenant_id, marketplace, product_id, category_id)
            if rule is not None:
                return rule
        return None

    async def resolve(self, tenant_id: uuid.UUID, marketplace: Marketplace,
                      product_id: Optional[uuid.UUID], category_id: Optional[uuid.UUID]) -> Decimal:
        """Margin percentage in [0, 100] for the product; 100 when no rule applies."""
        rule = await self.resolve_rule(tenant_id, marketplace, product_id, category_id)
        if rule is None:
            return DEFAULT_MARGIN
        logger.debug("Product %s on %s uses %s rule %s (%s%%)", product_id,
                     Marketplace(marketplace).value, rule.scope.name, rule.id, rule.margin_percentage)
        return Decimal(str(rule.margin_percentage))

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    @staticmethod
    def validate(rule) -> None:
        """Reject out-of-range margins and scope/priority mismatches."""
        margin = getattr(rule, "margin_percentage", None)
        if margin is None:
            raise ValidationError("margin_percentage is required")
        margin = Decimal(str(margin))
        if margin < 0 or margin > 100:
            raise ValidationError(f"margin_percentage must be between 0 and 100, got {margin}")

        try:
            scope = RuleScope(int(rule.priority))
        except (TypeError, ValueError):
            raise ValidationError(
                f"priority must be 1 (product), 2 (category) or 3 (global), got {rule.priority}"
            ) from None

        product_id = getattr(rule, "product_id", None)
        category_id = getattr(rule, "category_id", None)
        if scope == RuleScope.PRODUCT and (product_id is None or category_id is not None):
            raise ValidationError("PRODUCT rules need product_id and no category_id")
        if scope == RuleScope.CATEGORY and (category_id is None or product_id is not None):
            raise ValidationError("CATEGORY rules need category_id and no product_id")
        if scope == RuleScope.GLOBAL and (product_id is not None or category_id is not None):
            raise ValidationError("GLOBAL rules cannot set product_id or category_id")

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------
    async def list_rules(self, tenant_id: uuid.UUID,
                         marketplace: Optional[Marketplace] = None) -> List[SafetyMarginRule]:
        stmt = select(SafetyMarginRule).where(SafetyMarginRule.tenant_id == tenant_id)
        if marketplace is not None:
            stmt = stmt.where(SafetyMarginRule.marketplace == Marketplace(marketplace))
        stmt = stmt.order_by(SafetyMarginRule.priority, SafetyMarginRule.id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_rule(self, tenant_id: uuid.UUID, rule_id: int) -> SafetyMarginRule:
        rule = await self.db.get(SafetyMarginRule, rule_id)
        if rule is None or rule.tenant_id != tenant_id:
            raise RuleNotFoundError(f"Safety margin rule {rule_id} not found")
        return rule

    async def create_rule(
        self,
        tenant_id: uuid.UUID,
        marketplace: Marketplace,
        *,
        priority: int,
        margin_percentage,
        product_id: Optional[uuid.UUID] = None,
        category_id: Optional[uuid.UUID] = None,
    ) -> SafetyMarginRule:
        rule = SafetyMarginRule(
            tenant_id=tenant_id,
            marketplace=Marketplace(marketplace),
            product_id=product_id,
            category_id=category_id,
            priority=int(priority),
            margin_percentage=Decimal(str(margin_percentage)),
            scope_key=build_scope_key(product_id, category_id),
        )
        self.validate(rule)

        if await self._find(tenant_id, marketplace, rule.scope_key) is not None:
            raise DuplicateRuleError(f"A rule already exists for scope {rule.scope_key}")

        self.db.add(rule)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise DuplicateRuleError(f"A rule already exists for scope {rule.scope_key}") from e

        await self.enqueue_resync(rule)
        await self.db.commit()
        logger.info("Created %s safety margin rule %s (%s%%) for tenant %s",
                    rule.scope.name, rule.id, rule.margin_percentage, tenant_id)
        return rule

    async def update_rule(self, tenant_id: uuid.UUID, rule_id: int, margin_percentage) -> SafetyMarginRule:
        rule = await self.get_rule(tenant_id, rule_id)
        rule.margin_percentage = Decimal(str(margin_percentage))
        self.validate(rule)
        await self.enqueue_resync(rule)
        await self.db.commit()
        logger.info("Updated safety margin rule %s to %s%%", rule.id, rule.margin_percentage)
        return rule

    async def delete_rule(self, tenant_id: uuid.UUID, rule_id: int) -> int:
        """Delete the rule and enqueue resync for its scope. Returns items enqueued."""
        rule = await self.get_rule(tenant_id, rule_id)
        affected = await self.affected_products(rule)
        marketplace = rule.marketplace
        await self.db.delete(rule)
        await self.db.flush()
        enqueued = await self._enqueue(tenant_id, marketplace, affected)
        await self.db.commit()
        logger.info("Deleted safety margin rule %s; %s resync item(s) enqueued", rule_id, enqueued)
        return enqueued

    async def affected_products(self, rule: SafetyMarginRule) -> List[Tuple[uuid.UUID, Optional[uuid.UUID]]]:
        """(product_id, variant_id) pairs listed on the rule's marketplace that fall in its scope."""
        listed = await listing_registry.listed_variants(
            self.db, tenant_id=rule.tenant_id, marketplace=rule.marketplace
        )
        scope = rule.scope
        if scope == RuleScope.PRODUCT:
            return [pair for pair in listed if pair[0] == rule.product_id]
        if scope == RuleScope.GLOBAL:
            return listed

        if self.catalog is None:
            raise ValidationError("Catalog is required to resolve category-scoped rules")
        category_by_product = {}
        for product_id in {pair[0] for pair in listed}:
            product = await self.catalog.get_product(rule.tenant_id, product_id)
            category_by_product[product_id] = product.category_id
        return [pair for pair in listed if category_by_product.get(pair[0]) == rule.category_id]

    async def enqueue_resync(self, rule: SafetyMarginRule) -> int:
        affected = await self.affected_products(rule)
        return await self._enqueue(rule.tenant_id, rule.marketplace, affected)

    async def _enqueue(self, tenant_id, marketplace, affected) -> int:
        count = 0
        for product_id, variant_id in affected:
            item = await sync_queue.enqueue(
                self.db,
                tenant_id=tenant_id,
                product_id=product_id,
                variant_id=variant_id,
                marketplace=marketplace,
                sync_type=SyncType.STOCK,
                priority=SyncPriority.NORMAL,
                max_retries=self.settings.SYNC_MAX_RETRIES,
            )
            if item is not None:
                count += 1
        return count
