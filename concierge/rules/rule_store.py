"""Rule persistence behind a small async interface"""

from typing import Dict, Optional, Tuple
import structlog

from .models import BusinessRule

logger = structlog.get_logger(__name__)


class InMemoryRuleStore:
    """Rules grouped per business.

    Each write swaps in a new per-business mapping, so a reader holding a
    snapshot never sees a half-applied change.
    """

    def __init__(self):
        self._by_business: Dict[str, Dict[str, BusinessRule]] = {}
        self._owner: Dict[str, str] = {}

    async def list_rules(self, business_id: str) -> Tuple[BusinessRule, ...]:
        return tuple(self._by_business.get(business_id, {}).values())

    async def get(self, rule_id: str) -> Optional[BusinessRule]:
        business_id = self._owner.get(rule_id)
        if business_id is None:
            return None
        return self._by_business.get(business_id, {}).get(rule_id)

    async def save(self, rule: BusinessRule):
        updated = dict(self._by_business.get(rule.business_id, {}))
        updated[rule.rule_id] = rule
        self._by_business[rule.business_id] = updated
        self._owner[rule.rule_id] = rule.business_id

        logger.debug("Rule saved", rule_id=rule.rule_id, business_id=rule.business_id, version=rule.version)

    async def delete(self, rule_id: str) -> Optional[BusinessRule]:
        business_id = self._owner.pop(rule_id, None)
        if business_id is None:
            return None

        updated = dict(self._by_business.get(business_id, {}))
        removed = updated.pop(rule_id, None)
        self._by_business[business_id] = updated
        return removed
