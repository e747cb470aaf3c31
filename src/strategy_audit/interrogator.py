"""
Interrogation Engine - decides when a business description is audit-ready.

Each submission is scored for information density before anything
expensive runs:

    context -> keyword pre-score -> forced promotion? -> LLM score + one question

The pre-score looks for three independent signals:

    location / demographic reference        +30   (customer/market lens)
    named competitor or constraint          +30   (competitor/moat lens)
    unique advantage or proprietary asset   +40   (operations/supply lens)

A lens counts as covered once its keyword signal matches or a question has
been asked through it. Covered lenses are never asked about again, which
bounds the clarification loop together with the turn budget.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from strategy_audit.config import AuditConfig, default_config
from strategy_audit.errors import ProviderError
from strategy_audit.models import IdBreakdown, InterrogatorResult, Lens, LENS_ROTATION
from strategy_audit.parsing import clamp_score, parse_with_fallback
from strategy_audit.provider import ReasoningProvider

logger = logging.getLogger(__name__)


# =============================================================================
# Keyword Signals
# =============================================================================

SIGNAL_WEIGHTS: Dict[Lens, int] = {
    Lens.CUSTOMER_MARKET: 30,
    Lens.COMPETITOR_MOAT: 30,
    Lens.OPERATIONS_SUPPLY: 40,
}

LOCATION_PATTERNS = [
    r"\bnear\b", r"\blocated\b", r"\bbased (?:in|out of)\b", r"\bcity\b", r"\btown\b",
    r"\bneighbou?rhood\b", r"\bdistrict\b", r"\bsuburb", r"\bdowntown\b", r"\bregion\b",
    r"\bcampus\b", r"\buniversity\b", r"\bstudents?\b", r"\bresidents?\b", r"\bfamilies\b",
    r"\bmillennials\b", r"\bgen ?z\b", r"\baged \d", r"\bdemographic", r"\blocal\b",
    r"\bcatchment\b", r"\bfootfall\b",
]
# "in Bangalore", "across Europe" - needs the original casing
PLACE_NAME_PATTERN = re.compile(r"\b(?:in|across|around|near|from)\s+[A-Z][a-z]{2,}")

COMPETITOR_PATTERNS = [
    r"\bcompet", r"\brivals?\b", r"\bversus\b", r"\bvs\.?\s", r"\bincumbents?\b",
    r"\balternative to\b", r"\bagainst\b", r"\bconstraint", r"\bregulat", r"\bshortage\b",
    r"\bbottleneck", r"\blimited (?:by|budget|capital|supply)\b", r"\bmarket leader\b",
]

ADVANTAGE_PATTERNS = [
    r"\bexclusive", r"\bproprietary\b", r"\bpatent", r"\bunique\b", r"\bmoat\b",
    r"\btrade secret", r"\bin-house\b", r"\bfirst[- ]mover\b", r"\bdeal with\b",
    r"\bcontract with\b", r"\bpartnership\b", r"\bonly (?:we|one|provider)\b",
    r"\blicen[cs]ed?\b", r"\bown (?:the|our)\b",
]

_LOCATION_RE = re.compile("|".join(LOCATION_PATTERNS), re.IGNORECASE)
_COMPETITOR_RE = re.compile("|".join(COMPETITOR_PATTERNS), re.IGNORECASE)
_ADVANTAGE_RE = re.compile("|".join(ADVANTAGE_PATTERNS), re.IGNORECASE)

CATEGORY_KEYWORDS = {
    "Retail": ["store", "shop", "grocery", "retail", "outlet", "boutique"],
    "SaaS": ["saas", "software", "platform", "subscription", "app"],
    "Manufacturing": ["factory", "manufactur", "plant", "production line"],
    "Food & Beverage": ["restaurant", "cafe", "bakery", "kitchen", "food"],
    "Services": ["agency", "consult", "clinic", "salon", "service"],
}


def detect_signals(context: str) -> Set[Lens]:
    """Lenses whose keyword signal is present in the context."""
    lenses: Set[Lens] = set()
    if _LOCATION_RE.search(context) or PLACE_NAME_PATTERN.search(context):
        lenses.add(Lens.CUSTOMER_MARKET)
    if _COMPETITOR_RE.search(context):
        lenses.add(Lens.COMPETITOR_MOAT)
    if _ADVANTAGE_RE.search(context):
        lenses.add(Lens.OPERATIONS_SUPPLY)
    return lenses


def compute_pre_score(context: str) -> Tuple[int, IdBreakdown, Set[Lens]]:
    """
    Deterministic information-density score.

    Args:
        context: Cumulative business context

    Returns:
        Tuple of (score 0-100, per-signal breakdown, lenses matched)
    """
    lenses = detect_signals(context)
    breakdown = IdBreakdown(
        location=SIGNAL_WEIGHTS[Lens.CUSTOMER_MARKET] if Lens.CUSTOMER_MARKET in lenses else 0,
        competitor=SIGNAL_WEIGHTS[Lens.COMPETITOR_MOAT] if Lens.COMPETITOR_MOAT in lenses else 0,
        advantage=SIGNAL_WEIGHTS[Lens.OPERATIONS_SUPPLY] if Lens.OPERATIONS_SUPPLY in lenses else 0,
    )
    return breakdown.total, breakdown, lenses


def next_lens(covered: Iterable[Lens]) -> Optional[Lens]:
    """First lens in rotation order that is not yet covered."""
    covered = set(covered)
    for lens in LENS_ROTATION:
        if lens not in covered:
            return lens
    return None


def guess_category(context: str) -> str:
    lowered = context.lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(k in lowered for k in keywords):
            return category
    return "Unknown"


# =============================================================================
# Prompts
# =============================================================================

LENS_DESCRIPTIONS = {
    Lens.CUSTOMER_MARKET: "who the customers are, where they are, and how many",
    Lens.COMPETITOR_MOAT: "named competitors, constraints, and what stops rivals copying you",
    Lens.OPERATIONS_SUPPLY: "suppliers, proprietary resources, and operational advantages",
}

GENERIC_QUESTIONS = {
    Lens.CUSTOMER_MARKET: [
        "Can you describe your main customer segment and where those customers are located?",
        "Roughly how many customers do you serve today, and what does a typical one buy?",
    ],
    Lens.COMPETITOR_MOAT: [
        "Who is your closest competitor, and what makes your offering different from theirs?",
        "What constraint or barrier would stop a well-funded rival from copying you?",
    ],
    Lens.OPERATIONS_SUPPLY: [
        "Do you have any exclusive supplier, proprietary process, or unique resource?",
        "What part of your operations would be hardest for someone else to replicate?",
    ],
}

INTERROGATOR_INSTRUCTION = """You are a Strategic Interrogator and Information Density Scorer.

STEP 1 - CATEGORIZE the business (Retail, SaaS, Manufacturing, Services, ...).

STEP 2 - SCORE the fact pool as three buckets:
  location   (0-30): a concrete location or customer demographic is stated
  competitor (0-30): a named competitor or hard constraint is stated
  advantage  (0-40): a unique advantage or proprietary resource is stated

STEP 3 - DECIDE:
  If the total is below 70, write ONE deepening question scoped to the ACTIVE LENS.
  Use industry language. Never ask about a covered lens. Never repeat a previous question.
  If the total is 70 or more, set is_auditable to true and summarise all known facts
  into strategy_context.

OUTPUT: raw JSON only, no markdown.
{
  "category": "Retail",
  "location": 30,
  "competitor": 0,
  "advantage": 10,
  "question": "...",
  "lens_used": "customer_market | competitor_moat | operations_supply",
  "is_auditable": false,
  "strategy_context": "Compact summary of all known facts"
}"""


def build_interrogation_prompt(
    context: str,
    active_lens: Lens,
    covered: Iterable[Lens],
    asked_questions: Iterable[str],
    turn_count: int,
) -> str:
    covered_list = ", ".join(sorted(lens.value for lens in covered)) or "none"
    asked = list(asked_questions)
    blacklist = "\n".join(f"- {q}" for q in asked) if asked else "- none"
    return (
        f"ACTIVE LENS: {active_lens.value} ({LENS_DESCRIPTIONS[active_lens]})\n"
        f"COVERED LENSES (skip): {covered_list}\n"
        f"TURN: {turn_count}\n"
        f"PREVIOUSLY ASKED (do not repeat):\n{blacklist}\n\n"
        f"FACT POOL:\n{context}"
    )


# =============================================================================
# Interrogator
# =============================================================================


class Interrogator:
    """Scores information density and asks at most one question per turn."""

    FALLBACK_SCORE = 20

    def __init__(
        self,
        provider: ReasoningProvider,
        config: AuditConfig = default_config,
    ) -> None:
        self.provider = provider
        self.config = config

    async def evaluate(
        self,
        context: str,
        turn_count: int = 1,
        used_lenses: Iterable[Lens] = (),
        asked_questions: Iterable[str] = (),
    ) -> InterrogatorResult:
        """
        Evaluate the cumulative context for one turn.

        Args:
            context: Everything the user has said so far
            turn_count: Number of this turn (1 for the first submission)
            used_lenses: Lenses already asked about
            asked_questions: Questions already asked (never repeated)

        Returns:
            InterrogatorResult - audit-ready with a strategy context, or
            not ready with exactly one new question
        """
        pre_score, breakdown, signal_lenses = compute_pre_score(context)
        covered = set(used_lenses) | signal_lenses
        asked = list(asked_questions)
        category = guess_category(context)

        forced_reason = None
        if turn_count >= self.config.max_turns:
            forced_reason = "turn_budget"
        elif pre_score >= self.config.audit_threshold:
            forced_reason = "pre_score"
        elif len(covered) == len(LENS_ROTATION) or (len(covered) >= 2 and pre_score >= 50):
            forced_reason = "lens_coverage"

        if forced_reason:
            logger.info(
                f"Interrogation promoted without LLM ({forced_reason}): "
                f"pre_score={pre_score}, covered={sorted(l.value for l in covered)}, turn={turn_count}"
            )
            return InterrogatorResult(
                category=category,
                question="",
                is_auditable=True,
                strategy_context=context,
                id_score=pre_score,
                lens_used=None,
                id_breakdown=breakdown,
                covered_lenses=_ordered(covered),
                forced_reason=forced_reason,
            )

        active = next_lens(covered)
        prompt = build_interrogation_prompt(context, active, covered, asked, turn_count)

        def fallback() -> InterrogatorResult:
            return InterrogatorResult(
                category=category,
                question=_generic_question(active, asked),
                is_auditable=False,
                strategy_context=context,
                id_score=self.FALLBACK_SCORE,
                lens_used=active,
                id_breakdown=breakdown,
                covered_lenses=_ordered(covered | {active}),
            )

        def validate(obj: Dict[str, Any]) -> InterrogatorResult:
            return self._from_model_output(obj, context, category, breakdown, covered, active, asked)

        try:
            raw = await self.provider.invoke(INTERROGATOR_INSTRUCTION, prompt)
        except ProviderError as e:
            logger.warning(f"Interrogator call failed, using generic question: {e}")
            return fallback()

        result = parse_with_fallback(raw, fallback, validate, label="interrogator")
        logger.info(
            f"ID score {result.id_score} (auditable={result.is_auditable}, "
            f"lens={result.lens_used.value if result.lens_used else None}, turn={turn_count})"
        )
        return result

    def _from_model_output(
        self,
        obj: Dict[str, Any],
        context: str,
        category: str,
        pre_breakdown: IdBreakdown,
        covered: Set[Lens],
        active: Lens,
        asked: List[str],
    ) -> InterrogatorResult:
        # The keyword signal is a floor; the model can only add evidence
        breakdown = IdBreakdown(
            location=max(pre_breakdown.location, clamp_score(obj.get("location"), 0, upper=30)),
            competitor=max(pre_breakdown.competitor, clamp_score(obj.get("competitor"), 0, upper=30)),
            advantage=max(pre_breakdown.advantage, clamp_score(obj.get("advantage"), 0, upper=40)),
        )
        id_score = breakdown.total
        is_auditable = obj.get("is_auditable") is True or id_score >= self.config.audit_threshold

        strategy_context = obj.get("strategy_context")
        if not isinstance(strategy_context, str) or not strategy_context.strip():
            strategy_context = context

        if is_auditable:
            return InterrogatorResult(
                category=str(obj.get("category") or category),
                question="",
                is_auditable=True,
                strategy_context=strategy_context,
                id_score=id_score,
                lens_used=None,
                id_breakdown=breakdown,
                covered_lenses=_ordered(covered),
            )

        question = obj.get("question")
        if not isinstance(question, str) or not question.strip():
            raise ValueError("non-auditable result without a question")
        question = question.strip()
        if question.lower() in {q.lower() for q in asked}:
            logger.warning("Interrogator repeated a previous question, substituting")
            question = _generic_question(active, asked)

        lens_used = _parse_lens(obj.get("lens_used"))
        if lens_used is None or lens_used in covered:
            lens_used = active

        return InterrogatorResult(
            category=str(obj.get("category") or category),
            question=question,
            is_auditable=False,
            strategy_context=strategy_context,
            id_score=id_score,
            lens_used=lens_used,
            id_breakdown=breakdown,
            covered_lenses=_ordered(covered | {lens_used}),
        )


def _parse_lens(value: Any) -> Optional[Lens]:
    if not isinstance(value, str):
        return None
    try:
        return Lens(value.strip().lower())
    except ValueError:
        return None


def _ordered(lenses: Iterable[Lens]) -> List[Lens]:
    lenses = set(lenses)
    return [lens for lens in LENS_ROTATION if lens in lenses]


def _generic_question(lens: Lens, asked: List[str]) -> str:
    asked_lower = {q.lower() for q in asked}
    for question in GENERIC_QUESTIONS[lens]:
        if question.lower() not in asked_lower:
            return question
    return GENERIC_QUESTIONS[lens][-1]
