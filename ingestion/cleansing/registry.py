"""
Attribute definition registry and cleanse policy book.

Both are read once per batch and cached for the run.
"""

from typing import Dict, Iterable, List, Optional
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from models.reference import AttrDefinition, CleansePolicy, CleanseRuleSet, ListGroupG

logger = logging.getLogger(__name__)

PHASE_LAST = 10_000
UNKNOWN_RULE_VERSION = "UNKNOWN"

# Attribute codes with pipeline-level meaning
PRODUCT_CD_ATTR = "PRODUCT_CD"
PRODUCT_MANAGEMENT_CD_ATTR = "PRODUCT_MANAGEMENT_CD"
BRAND_ATTR = "BRAND"
CATEGORY_ATTR = "CATEGORY_1"
CATALOG_DESC_ATTR = "CATALOG_DESC"


class AttributeDefinitionRegistry:
    """
    Read-mostly catalog: attribute code → definition.

    Answers which attributes feed the product master (and into which
    column), which feed the EAV table, and in which order attributes of a
    record are cleansed.
    """

    def __init__(self, definitions: Iterable[AttrDefinition]):
        self._definitions: Dict[str, AttrDefinition] = {d.attr_cd: d for d in definitions}

    @classmethod
    async def load(cls, session: AsyncSession) -> "AttributeDefinitionRegistry":
        result = await session.execute(
            select(AttrDefinition).where(AttrDefinition.is_active.is_(True))
        )
        definitions = result.scalars().all()
        logger.info(f"Loaded {len(definitions)} attribute definitions")
        return cls(definitions)

    def get(self, attr_cd: str) -> Optional[AttrDefinition]:
        return self._definitions.get(attr_cd)

    def __contains__(self, attr_cd: str) -> bool:
        return attr_cd in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def data_type(self, attr_cd: str) -> Optional[str]:
        definition = self.get(attr_cd)
        return definition.data_type if definition else None

    def cleanse_phase(self, attr_cd: str) -> int:
        definition = self.get(attr_cd)
        if definition is None or definition.cleanse_phase is None:
            return PHASE_LAST
        return definition.cleanse_phase

    def is_single_select(self, attr_cd: str) -> bool:
        definition = self.get(attr_cd)
        return bool(definition and (definition.select_type or "").upper() == "SINGLE")

    def master_column(self, attr_cd: str) -> Optional[str]:
        """Target column on m_product, or None if the attribute does not feed the master"""
        definition = self.get(attr_cd)
        if definition is None or not definition.is_golden_product:
            return None
        return definition.target_column or None

    def feeds_eav(self, attr_cd: str) -> bool:
        definition = self.get(attr_cd)
        return bool(definition and definition.is_golden_attr_eav)

    def unit_cd(self, attr_cd: str) -> Optional[str]:
        definition = self.get(attr_cd)
        return definition.product_unit_cd if definition else None


def _policy_order(policy: CleansePolicy):
    # step 0 means "unordered" and runs after numbered steps
    step = policy.step_no or 0
    return (step == 0, step, policy.policy_id or 0)


def _scope_matches(scope: Optional[str], value: Optional[str]) -> bool:
    if not scope:
        return True
    if not value:
        return False
    return scope.strip().upper() == value.strip().upper()


def select_policy(
    chain: List[CleansePolicy],
    brand_cd: Optional[str] = None,
    category_cd: Optional[str] = None,
) -> Optional[CleansePolicy]:
    """
    Pick the policy that applies to one record.

    The chain is walked in step order. The first scoped policy whose brand
    and category scopes both match wins; otherwise the first common policy
    (no brand and no category scope) applies; otherwise None.
    """
    common = None
    for policy in sorted(chain, key=_policy_order):
        if not policy.brand_scope and not policy.category_scope:
            if common is None:
                common = policy
            continue
        if _scope_matches(policy.brand_scope, brand_cd) and _scope_matches(policy.category_scope, category_cd):
            return policy
    return common


class CleansePolicyBook:
    """
    Active cleanse policies for one company, grouped per attribute, plus
    the rule version of every rule set they belong to.
    """

    def __init__(
        self,
        policies: Iterable[CleansePolicy],
        rule_sets: Optional[Dict[int, CleanseRuleSet]] = None,
        list_groups: Optional[Dict[str, int]] = None,
    ):
        self._chains: Dict[str, List[CleansePolicy]] = {}
        for policy in policies:
            self._chains.setdefault(policy.attr_cd, []).append(policy)
        for attr_cd in self._chains:
            self._chains[attr_cd].sort(key=_policy_order)
        self._rule_sets = rule_sets or {}
        self._list_groups = list_groups or {}

    @classmethod
    async def load(cls, session: AsyncSession, company_cd: str) -> "CleansePolicyBook":
        rule_result = await session.execute(
            select(CleanseRuleSet).where(CleanseRuleSet.is_active.is_(True))
        )
        rule_sets = {rs.rule_set_id: rs for rs in rule_result.scalars().all()}

        policy_result = await session.execute(
            select(CleansePolicy).where(
                CleansePolicy.is_active.is_(True),
                CleansePolicy.rule_set_id.in_(list(rule_sets.keys()) or [-1]),
                or_(CleansePolicy.gp_scope.is_(None), CleansePolicy.gp_scope == "", CleansePolicy.gp_scope == company_cd),
            )
        )
        policies = policy_result.scalars().all()

        group_result = await session.execute(
            select(ListGroupG.g_list_group_cd, ListGroupG.g_list_group_id).where(ListGroupG.is_active.is_(True))
        )
        list_groups = {row[0]: row[1] for row in group_result.all()}

        logger.info(
            f"Loaded {len(policies)} cleanse policies from {len(rule_sets)} rule sets "
            f"for company {company_cd}"
        )
        return cls(policies, rule_sets, list_groups)

    def chain(self, attr_cd: str) -> List[CleansePolicy]:
        return list(self._chains.get(attr_cd, []))

    def rule_version(self, policy: Optional[CleansePolicy]) -> str:
        if policy is None:
            return UNKNOWN_RULE_VERSION
        rule_set = self._rule_sets.get(policy.rule_set_id)
        if rule_set is not None and (rule_set.rule_version or "").strip():
            return rule_set.rule_version.strip()
        if policy.rule_set_id is not None:
            return str(policy.rule_set_id)
        return UNKNOWN_RULE_VERSION

    def list_group_id(self, g_list_group_cd: Optional[str]) -> Optional[int]:
        if not g_list_group_cd:
            return None
        return self._list_groups.get(g_list_group_cd)
