# backend/tasks/ab_testing.py
"""
A/B variant selection for automation rules.

Variants carry relative weights that need not sum to 1; selection is
proportional to weight among variants with a positive weight.
"""
import logging
import random
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from models.ab_test import ABTestVariant, AutomationABTest

logger = logging.getLogger(__name__)

_rng = random.Random()


def select_weighted_variant(
    variants: List[ABTestVariant],
    rng: Optional[random.Random] = None
) -> Optional[ABTestVariant]:
    """Draw r in [0, total) and take the first variant whose running weight reaches r"""
    candidates = [v for v in variants if v.weight > 0]
    if not candidates:
        return None

    total = sum(v.weight for v in candidates)
    draw = (rng or _rng).random() * total

    cumulative = 0.0
    for variant in candidates:
        cumulative += variant.weight
        if cumulative >= draw:
            return variant
    return candidates[-1]


async def choose_variant_for_rule(
    repo,
    rule: Dict[str, Any],
    rng: Optional[random.Random] = None
) -> Optional[Dict[str, Any]]:
    """
    Pick a variant for an A/B-enabled rule.

    Returns the fields to store on the execution (ab_test_id,
    ab_variant_name, email_template_id, ab_subject_override) or None when
    the rule has no usable active test.
    """
    if not rule.get("ab_test_enabled"):
        return None

    raw = await repo.get_active_ab_test(rule["id"])
    if not raw:
        return None

    try:
        test = AutomationABTest.model_validate(raw)
    except ValidationError as e:
        logger.error(f"Invalid A/B test for rule {rule['id']}: {e}")
        return None

    variant = select_weighted_variant(test.variants, rng=rng)
    if variant is None:
        logger.warning(f"A/B test {test.id} has no weighted variants")
        return None

    logger.info(f"🧪 Rule {rule['id']} selected variant {variant.name} of test {test.id}")
    return {
        "ab_test_id": test.id,
        "ab_variant_name": variant.name,
        "email_template_id": variant.template_id,
        "ab_subject_override": variant.subject,
    }
