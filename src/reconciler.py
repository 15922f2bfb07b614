"""
Specification reconciliation: seller specs vs. extracted web specs.

Pipeline (one call per user action, pure and synchronous):
    seller specs + extraction result
        -> build_target_specs()      config (3) / keys (2) / buyers (1)
        -> reconcile()               1:1 pairs by best combined priority, common options
        -> select_buyer_isqs()       top-N pairs, options back-filled from the seller spec
        -> ReconciliationResult

Every public entry point follows the same degrade policy: malformed entries are
skipped, an empty or partial extraction yields fewer pairs, and an unexpected
exception is logged and turned into an empty result. Nothing here raises.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from spec_matcher import (
    UNIT_INFERENCE_LIMIT_MM,
    name_similarity_score,
    options_match,
    specs_similar,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
CONFIG_PRIORITY = 3
KEY_PRIORITY = 2
BUYER_PRIORITY = 1

MAX_BUYER_SPECS = 2        # Buyer ISQs surfaced per product
MAX_BUYER_OPTIONS = 8      # Options per buyer ISQ
PLACEHOLDER_OPTION = 'other'

CATEGORY_SELLER = 'seller'
CATEGORY_CONFIG = 'config'
CATEGORY_KEY = 'key'
CATEGORY_BUYER = 'buyer'


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class Tier(Enum):
    PRIMARY = 'Primary'
    SECONDARY = 'Secondary'
    TERTIARY = 'Tertiary'

    @classmethod
    def parse(cls, value) -> 'Tier':
        """Tolerant lookup: "primary", "finalized_secondary_specs", Tier.TERTIARY. Unknown -> PRIMARY."""
        if isinstance(value, Tier):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            for tier in cls:
                if tier.value.lower() in lowered:
                    return tier
        return cls.PRIMARY


TIER_PRIORITY: Dict[Tier, int] = {
    Tier.PRIMARY: 3,
    Tier.SECONDARY: 2,
    Tier.TERTIARY: 1,
}


def _coerce_options(raw) -> Tuple[str, ...]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        return ()
    options = []
    for value in raw:
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (int, float)):
            value = str(value)
        if isinstance(value, str):
            options.append(value)
    return tuple(options)


@dataclass(frozen=True)
class SpecEntry:
    """
    A named specification with candidate option values.

    options keep source order and wording; they are not guaranteed unique.
    priority defaults to the tier weight when not given explicitly
    (extraction categories pass CONFIG/KEY/BUYER_PRIORITY instead).
    """
    name: str
    options: Tuple[str, ...] = ()
    tier: Tier = Tier.PRIMARY
    priority: int = 0
    category: str = CATEGORY_SELLER
    input_type: str = ''

    def __post_init__(self):
        # Frozen: coerce through object.__setattr__
        if not isinstance(self.name, str):
            object.__setattr__(self, 'name', '')
        if not isinstance(self.input_type, str):
            object.__setattr__(self, 'input_type', '')
        object.__setattr__(self, 'options', _coerce_options(self.options))
        object.__setattr__(self, 'tier', Tier.parse(self.tier))
        if not isinstance(self.priority, int) or self.priority <= 0:
            object.__setattr__(self, 'priority', TIER_PRIORITY[self.tier])

    @classmethod
    def from_dict(cls, data, tier=None, priority: int = 0,
                  category: str = CATEGORY_SELLER) -> Optional['SpecEntry']:
        """Build from a {'spec_name'|'name', 'options', 'tier'} dict; None when data is not a dict."""
        if isinstance(data, SpecEntry):
            if priority and (data.priority != priority or data.category != category):
                return replace(data, priority=priority, category=category)
            return data
        if not isinstance(data, dict):
            return None
        name = data.get('spec_name', data.get('name', ''))
        if isinstance(name, str):
            name = name.strip()
        return cls(
            name=name,
            options=data.get('options', ()),
            tier=tier if tier is not None else data.get('tier', Tier.PRIMARY),
            priority=priority or data.get('priority', 0),
            category=data.get('category', category) if category == CATEGORY_SELLER else category,
            input_type=data.get('input_type', ''),
        )

    def to_dict(self) -> dict:
        return {
            'spec_name': self.name,
            'options': list(self.options),
            'tier': self.tier.value,
            'priority': self.priority,
            'category': self.category,
            'input_type': self.input_type,
        }


@dataclass(frozen=True)
class MatchedSpecPair:
    """
    A source spec paired with the target spec judged to be the same attribute.

    common_options is a subset of source_spec.options in source order and
    wording. target_index identifies the consumed target (1:1 per reconcile call).
    """
    source_spec: SpecEntry
    target_spec: SpecEntry
    common_options: Tuple[str, ...]
    combined_priority: int
    target_index: int = -1

    def to_dict(self) -> dict:
        return {
            'spec_name': self.source_spec.name,
            'options': list(self.common_options),
            'tier': self.source_spec.tier.value,
            'target_spec_name': self.target_spec.name,
            'target_category': self.target_spec.category,
            'combined_priority': self.combined_priority,
        }


@dataclass(frozen=True)
class BuyerISQ:
    name: str
    options: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {'spec_name': self.name, 'options': list(self.options), 'category': CATEGORY_BUYER}


@dataclass
class ReconciliationResult:
    common_specs: List[MatchedSpecPair] = field(default_factory=list)
    buyer_isqs: List[BuyerISQ] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'common_specs': [pair.to_dict() for pair in self.common_specs],
            'buyer_isqs': [isq.to_dict() for isq in self.buyer_isqs],
        }


@dataclass
class SpecDiff:
    """One matched spec in a two-sided comparison."""
    left_spec: SpecEntry
    right_spec: SpecEntry
    common_options: List[str]
    left_unique_options: List[str]
    right_unique_options: List[str]

    def to_dict(self) -> dict:
        return {
            'spec_name': self.left_spec.name,
            'other_spec_name': self.right_spec.name,
            'common_options': list(self.common_options),
            'left_unique_options': list(self.left_unique_options),
            'right_unique_options': list(self.right_unique_options),
        }


@dataclass
class SpecComparison:
    matched: List[SpecDiff] = field(default_factory=list)
    left_only: List[SpecEntry] = field(default_factory=list)
    right_only: List[SpecEntry] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'matched': [diff.to_dict() for diff in self.matched],
            'left_only': [spec.to_dict() for spec in self.left_only],
            'right_only': [spec.to_dict() for spec in self.right_only],
        }


def _indexed_specs(specs, category: str = CATEGORY_SELLER) -> List[Tuple[int, SpecEntry]]:
    """(original_index, SpecEntry) for every coercible entry; others are dropped."""
    if not isinstance(specs, (list, tuple)):
        return []
    indexed = []
    for idx, raw in enumerate(specs):
        spec = SpecEntry.from_dict(raw, category=category)
        if spec is None:
            logger.debug("Dropping malformed spec entry at index %d: %r", idx, raw)
            continue
        indexed.append((idx, spec))
    return indexed


def coerce_specs(specs) -> List[SpecEntry]:
    """Accept SpecEntry objects or dicts; silently drop anything else."""
    return [spec for _, spec in _indexed_specs(specs)]


# ---------------------------------------------------------------------------
# Target specs from an extraction result
# ---------------------------------------------------------------------------

def _extraction_part(extraction, key: str):
    if isinstance(extraction, dict):
        return extraction.get(key)
    return getattr(extraction, key, None)


def build_target_specs(extraction) -> List[SpecEntry]:
    """
    Flatten an extraction result {config, keys, buyers} into weighted target specs.

    config -> CONFIG_PRIORITY, keys -> KEY_PRIORITY, buyers -> BUYER_PRIORITY,
    in that order. Entries without a name or without options contribute
    nothing, so an empty config (name == '') is simply absent.
    """
    if extraction is None:
        return []

    targets: List[SpecEntry] = []
    parts = [
        ('config', CATEGORY_CONFIG, CONFIG_PRIORITY),
        ('keys', CATEGORY_KEY, KEY_PRIORITY),
        ('buyers', CATEGORY_BUYER, BUYER_PRIORITY),
    ]
    for key, category, priority in parts:
        raw = _extraction_part(extraction, key)
        if raw is None:
            continue
        items = [raw] if isinstance(raw, (dict, SpecEntry)) else raw
        if not isinstance(items, (list, tuple)):
            continue
        for item in items:
            spec = SpecEntry.from_dict(item, priority=priority, category=category)
            if spec is None or not spec.name.strip() or not spec.options:
                continue
            targets.append(spec)
    return targets


# ---------------------------------------------------------------------------
# SpecReconciler
# ---------------------------------------------------------------------------

def find_common_options(
    source_options: Sequence[str],
    target_options: Sequence[str],
    unit_inference_limit: float = UNIT_INFERENCE_LIMIT_MM,
) -> List[str]:
    """
    Source options that match some target option, in source order and wording.

    Greedy: each target option is consumed by the first source option it
    matches, so ['2mm', '2 mm'] vs ['2mm'] yields ['2mm'] only.
    """
    source = _coerce_options(source_options)
    target = _coerce_options(target_options)
    used_targets = set()
    common = []
    for option in source:
        if not option.strip():
            continue
        for j, candidate in enumerate(target):
            if j in used_targets:
                continue
            if options_match(option, candidate, unit_inference_limit):
                used_targets.add(j)
                common.append(option)
                break
    return common


def _reconcile_inner(source_specs, target_specs, unit_inference_limit: float) -> List[MatchedSpecPair]:
    sources = _indexed_specs(source_specs)
    targets = _indexed_specs(target_specs)
    if not sources or not targets:
        return []

    consumed = set()
    pairs: List[MatchedSpecPair] = []

    for _, source in sources:
        if not source.name.strip():
            continue
        best_index = None
        best_target = None
        best_score = -1
        for idx, target in targets:
            if idx in consumed:
                continue
            if not specs_similar(source.name, target.name):
                continue
            score = source.priority + target.priority
            if score > best_score:
                best_index, best_target, best_score = idx, target, score

        if best_target is None:
            logger.debug("No target spec for %r", source.name)
            continue

        consumed.add(best_index)
        common = find_common_options(source.options, best_target.options, unit_inference_limit)
        logger.debug("Paired %r -> %r (priority %d, %d common options)",
                     source.name, best_target.name, best_score, len(common))
        pairs.append(MatchedSpecPair(
            source_spec=source,
            target_spec=best_target,
            common_options=tuple(common),
            combined_priority=best_score,
            target_index=best_index,
        ))

    # Identical source names keep the first pair; the dropped pair's target stays consumed
    seen_names = set()
    unique: List[MatchedSpecPair] = []
    for pair in pairs:
        if pair.source_spec.name in seen_names:
            logger.debug("Dropping duplicate source spec %r", pair.source_spec.name)
            continue
        seen_names.add(pair.source_spec.name)
        unique.append(pair)

    # sorted() is stable: equal priorities keep pairing order
    return sorted(unique, key=lambda p: p.combined_priority, reverse=True)


def reconcile(
    source_specs: Sequence[SpecEntry],
    target_specs: Sequence[SpecEntry],
    unit_inference_limit: float = UNIT_INFERENCE_LIMIT_MM,
) -> List[MatchedSpecPair]:
    """
    Pair each source spec with its best unconsumed similar target spec.

    Best = highest source.priority + target.priority; ties go to the target
    seen first. Each target is consumed by at most one source. Pairs with no
    common options are kept (common_options == ()). Every source pairs
    first; pairs whose source name repeats an earlier one are then dropped,
    though their targets stay consumed. Result is sorted by descending
    combined priority, stable.

    Empty or malformed input returns []. Never raises.
    """
    try:
        return _reconcile_inner(source_specs, target_specs, unit_inference_limit)
    except Exception:
        logger.warning("Reconciliation failed; returning no common specs", exc_info=True)
        return []


# ---------------------------------------------------------------------------
# BuyerSelector
# ---------------------------------------------------------------------------

def _option_key(value: str) -> str:
    return re.sub(r'\s+', '', value.lower())


def _find_raw_source(pair: MatchedSpecPair, raw_specs: List[SpecEntry]) -> SpecEntry:
    """Exact name first, then the most similar name, else the pair's own source spec."""
    name = pair.source_spec.name
    for spec in raw_specs:
        if spec.name == name:
            return spec

    best = None
    best_score = -1.0
    for spec in raw_specs:
        if not specs_similar(name, spec.name):
            continue
        score = name_similarity_score(name, spec.name)
        if score > best_score:
            best, best_score = spec, score
    return best if best is not None else pair.source_spec


def _select_inner(pairs, raw_source_specs, max_specs: int, max_options: int,
                  empty_placeholder: Optional[str]) -> List[BuyerISQ]:
    if not isinstance(pairs, (list, tuple)) or not pairs or max_specs <= 0:
        return []
    raw_specs = coerce_specs(raw_source_specs)
    max_options = max(0, max_options)

    buyers: List[BuyerISQ] = []
    for pair in list(pairs)[:max_specs]:
        if not isinstance(pair, MatchedSpecPair):
            continue
        result: List[str] = []
        seen = set()
        for option in pair.common_options:
            key = _option_key(option)
            if key and key not in seen:
                seen.add(key)
                result.append(option)

        if len(result) < max_options:
            raw = _find_raw_source(pair, raw_specs)
            for option in raw.options:
                if len(result) >= max_options:
                    break
                if option.strip().lower() == PLACEHOLDER_OPTION:
                    continue
                key = _option_key(option)
                if not key or key in seen:
                    continue
                seen.add(key)
                result.append(option)

        result = result[:max_options]
        if not result and empty_placeholder:
            result = [empty_placeholder]
        buyers.append(BuyerISQ(name=pair.source_spec.name, options=tuple(result)))
    return buyers


def select_buyer_isqs(
    matched_pairs: Sequence[MatchedSpecPair],
    raw_source_specs: Sequence[SpecEntry],
    max_specs: int = MAX_BUYER_SPECS,
    max_options: int = MAX_BUYER_OPTIONS,
    empty_placeholder: Optional[str] = None,
) -> List[BuyerISQ]:
    """
    Pick the top max_specs pairs and fill each one's options up to max_options.

    Options start as the pair's common options; the rest come from the raw
    seller spec of the same name (exact, else similar), in source order,
    skipping case/whitespace duplicates and the literal 'other'.

    No pairs -> []. A selected spec that ends with no options gets
    [empty_placeholder] when one is given, else an empty options tuple.
    """
    try:
        return _select_inner(matched_pairs, raw_source_specs, max_specs, max_options,
                             empty_placeholder)
    except Exception:
        logger.warning("Buyer ISQ selection failed; returning none", exc_info=True)
        return []


# ---------------------------------------------------------------------------
# End-to-end run and reporting
# ---------------------------------------------------------------------------

def run_reconciliation(
    seller_specs: Sequence[SpecEntry],
    extraction,
    max_specs: int = MAX_BUYER_SPECS,
    max_options: int = MAX_BUYER_OPTIONS,
    unit_inference_limit: float = UNIT_INFERENCE_LIMIT_MM,
    empty_placeholder: Optional[str] = None,
) -> ReconciliationResult:
    """
    Reconcile seller specs against an extraction result and select buyer ISQs.

    extraction is an ExtractionResult or a plain {config, keys, buyers} dict.
    """
    sellers = coerce_specs(seller_specs)
    targets = build_target_specs(extraction)
    pairs = reconcile(sellers, targets, unit_inference_limit=unit_inference_limit)
    buyers = select_buyer_isqs(pairs, sellers, max_specs=max_specs, max_options=max_options,
                               empty_placeholder=empty_placeholder)
    logger.debug("Reconciliation: %d seller specs, %d targets, %d common, %d buyer ISQs",
                 len(sellers), len(targets), len(pairs), len(buyers))
    return ReconciliationResult(common_specs=pairs, buyer_isqs=buyers)


def compare_spec_sets(
    left_specs: Sequence[SpecEntry],
    right_specs: Sequence[SpecEntry],
    unit_inference_limit: float = UNIT_INFERENCE_LIMIT_MM,
) -> SpecComparison:
    """
    Two-sided diff of two spec sets (e.g. two extraction runs).

    For each matched spec: options both sides share, options only the left
    has, options only the right has. Specs with no counterpart are listed
    per side.
    """
    try:
        left = coerce_specs(left_specs)
        right = coerce_specs(right_specs)
        pairs = reconcile(left, right, unit_inference_limit=unit_inference_limit)

        matched = []
        for pair in pairs:
            common = list(pair.common_options)
            left_unique = [o for o in pair.source_spec.options if o not in common and o.strip()]
            right_unique = [
                o for o in pair.target_spec.options
                if o.strip() and not any(options_match(o, c, unit_inference_limit) for c in common)
            ]
            matched.append(SpecDiff(pair.source_spec, pair.target_spec, common,
                                    left_unique, right_unique))

        paired_left = {pair.source_spec.name for pair in pairs}
        consumed_right = {pair.target_index for pair in pairs}
        left_only = [s for s in left if s.name.strip() and s.name not in paired_left]
        right_only = [s for i, s in enumerate(right) if i not in consumed_right and s.name.strip()]
        return SpecComparison(matched=matched, left_only=left_only, right_only=right_only)
    except Exception:
        logger.warning("Spec comparison failed", exc_info=True)
        return SpecComparison()


def common_specs_frame(pairs: Iterable[MatchedSpecPair]) -> pd.DataFrame:
    """One row per common spec, for display and export collaborators."""
    columns = ['spec_name', 'tier', 'target_spec_name', 'target_category',
               'combined_priority', 'source_option_count', 'common_option_count',
               'common_options']
    rows = []
    for pair in pairs or []:
        rows.append({
            'spec_name': pair.source_spec.name,
            'tier': pair.source_spec.tier.value,
            'target_spec_name': pair.target_spec.name,
            'target_category': pair.target_spec.category,
            'combined_priority': pair.combined_priority,
            'source_option_count': len(pair.source_spec.options),
            'common_option_count': len(pair.common_options),
            'common_options': '; '.join(pair.common_options),
        })
    return pd.DataFrame(rows, columns=columns)


def compute_coverage_metrics(result: ReconciliationResult, seller_specs=None) -> Dict[str, object]:
    """
    Coverage summary of a reconciliation run.

    Returns a dict with:
        seller_spec_count: int - seller specs considered
        common_spec_count / common_spec_rate: seller specs that found a counterpart
        tier_breakdown: dict of tier -> common spec count
        empty_common_count: pairs whose option intersection is empty
        option_coverage_rate: common options / options of the paired seller specs
        buyer_isq_count / buyer_option_count: size of the buyer ISQ view
    """
    sellers = coerce_specs(seller_specs) if seller_specs is not None else []
    pairs = result.common_specs if result else []
    buyers = result.buyer_isqs if result else []
    total = len(sellers)

    df = common_specs_frame(pairs)
    if df.empty:
        return {'seller_spec_count': total, 'common_spec_count': 0, 'common_spec_rate': 0.0,
                'tier_breakdown': {}, 'empty_common_count': 0, 'option_coverage_rate': 0.0,
                'buyer_isq_count': len(buyers),
                'buyer_option_count': sum(len(b.options) for b in buyers)}

    source_options = int(df['source_option_count'].sum())
    common_options = int(df['common_option_count'].sum())
    return {
        'seller_spec_count': total,
        'common_spec_count': len(df),
        'common_spec_rate': round(len(df) / total * 100, 1) if total else 0.0,
        'tier_breakdown': {k: int(v) for k, v in df['tier'].value_counts().items()},
        'empty_common_count': int((df['common_option_count'] == 0).sum()),
        'option_coverage_rate': round(common_options / source_options * 100, 1) if source_options else 0.0,
        'buyer_isq_count': len(buyers),
        'buyer_option_count': sum(len(b.options) for b in buyers),
    }


# ---------------------------------------------------------------------------
# Self-test: end-to-end scenarios
# ---------------------------------------------------------------------------

def self_test_reconciliation() -> List[str]:
    """
    Run the end-to-end reconciliation scenarios.

    Returns a list of failure messages (empty list = all passed).
    """
    failures: List[str] = []

    grade = [SpecEntry('Grade', ('SS304', 'SS316', 'SS202'), Tier.PRIMARY)]
    got = run_reconciliation(grade, {'config': {'spec_name': 'Grade', 'options': ['304', '316']}})
    common = [list(p.common_options) for p in got.common_specs]
    if common != [['SS304', 'SS316']]:
        failures.append(f"Grade scenario: common options {common}, expected [['SS304', 'SS316']]")

    thickness = [SpecEntry('Thickness', ('1mm', '2mm', '5mm'), Tier.PRIMARY)]
    got = run_reconciliation(thickness, {'keys': [{'spec_name': 'Thk', 'options': ['1 mm', '25.4mm']}]})
    common = [list(p.common_options) for p in got.common_specs]
    if common != [['1mm']]:
        failures.append(f"Thickness scenario: common options {common}, expected [['1mm']]")

    got = run_reconciliation(thickness, {'config': {'spec_name': '', 'options': []}, 'keys': []})
    if got.common_specs or got.buyer_isqs:
        failures.append("Empty extraction produced output")

    return failures
