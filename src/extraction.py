"""
Tolerant parsing of language-model output into typed spec results.

The model is asked for JSON but routinely returns markdown fences, prose
around the object, trailing commas, or a response cut off mid-array. Every
parser here returns a (possibly empty) typed result plus warnings and never
raises; the reconciler only ever sees validated SpecEntry objects.

    parse_extraction_response()   {config, keys, buyers} -> ExtractionResult
    parse_audit_response()        [{specification, status, ...}] -> List[AuditFinding]
    flatten_seller_specs()        stage-1 seller payload -> List[SpecEntry]
    merge_audit_results()         seller specs + findings -> display rows
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from reconciler import (
    BUYER_PRIORITY,
    CATEGORY_BUYER,
    CATEGORY_CONFIG,
    CATEGORY_KEY,
    CONFIG_PRIORITY,
    KEY_PRIORITY,
    SpecEntry,
    Tier,
    coerce_specs,
)
from spec_matcher import specs_similar

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MAX_CONFIG_OPTIONS = 8
MAX_KEY_OPTIONS = 6
MAX_KEYS = 3
MAX_BUYERS = 2
MAX_OPTION_LENGTH = 50   # Config options this long or longer are prose, not values

AUDIT_STATUS_CORRECT = 'correct'
AUDIT_STATUS_INCORRECT = 'incorrect'
AUDIT_STATUS_NOT_AUDITED = 'not-audited'

# Stage-1 payload section -> tier
SELLER_SPEC_SECTIONS = [
    ('finalized_primary_specs', Tier.PRIMARY),
    ('finalized_secondary_specs', Tier.SECONDARY),
    ('finalized_tertiary_specs', Tier.TERTIARY),
]

_FENCE_RE = re.compile(r'```(?:json|JSON)?')
_TRAILING_COMMA_RE = re.compile(r',\s*([\]}])')


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """Validated extraction output. config is None when the model gave no usable config."""
    config: Optional[SpecEntry] = None
    keys: List[SpecEntry] = field(default_factory=list)
    buyers: List[SpecEntry] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.config is None and not self.keys and not self.buyers

    @classmethod
    def from_dict(cls, data) -> 'ExtractionResult':
        """
        Rebuild from to_dict() output or a stored extraction.

        Entries are re-weighted config=3, key=2, buyer=1. Nameless entries,
        non-dict entries and non-string warnings are dropped; no caps are
        re-applied.
        """
        if isinstance(data, ExtractionResult):
            return data
        if not isinstance(data, dict):
            return cls()
        configs = _coerce_entries(data.get('config'), CONFIG_PRIORITY, CATEGORY_CONFIG)
        warnings = data.get('warnings')
        return cls(
            config=configs[0] if configs else None,
            keys=_coerce_entries(data.get('keys'), KEY_PRIORITY, CATEGORY_KEY),
            buyers=_coerce_entries(data.get('buyers'), BUYER_PRIORITY, CATEGORY_BUYER),
            warnings=[w for w in warnings if isinstance(w, str)] if isinstance(warnings, list) else [],
        )

    def to_dict(self) -> dict:
        config = self.config.to_dict() if self.config else {'spec_name': '', 'options': []}
        return {
            'config': config,
            'keys': [k.to_dict() for k in self.keys],
            'buyers': [b.to_dict() for b in self.buyers],
            'warnings': list(self.warnings),
        }


@dataclass
class AuditFinding:
    specification: str
    status: str = AUDIT_STATUS_NOT_AUDITED
    explanation: str = ''
    problematic_options: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'specification': self.specification,
            'status': self.status,
            'explanation': self.explanation,
            'problematic_options': list(self.problematic_options),
        }


# ---------------------------------------------------------------------------
# JSON recovery
# ---------------------------------------------------------------------------

def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub('', text).strip()


def _slice_outer(text: str, open_char: str, close_char: str) -> str:
    """From the first open_char to the last close_char; to the end if the close is missing."""
    start = text.find(open_char)
    if start < 0:
        return ''
    end = text.rfind(close_char)
    if end < start:
        return text[start:]
    return text[start:end + 1]


def repair_json(text: str) -> str:
    """
    Best-effort repair of truncated or sloppy JSON.

    Closes an unterminated string, drops a dangling comma or key separator,
    closes open brackets/braces in nesting order, and removes trailing commas.
    Brackets inside strings are ignored.
    """
    stack: List[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in '{[':
            stack.append('}' if ch == '{' else ']')
        elif ch in '}]' and stack and stack[-1] == ch:
            stack.pop()

    fixed = text
    if in_string:
        fixed += '"'
    fixed = re.sub(r'[,:\s]+$', '', fixed)
    if stack and stack[-1] == '}':
        # A key left without its value: {"name": "x", "options"
        fixed = re.sub(r',\s*"[^"]*"$', '', fixed)
    fixed += ''.join(reversed(stack))
    return _TRAILING_COMMA_RE.sub(r'\1', fixed)


def _load_json(text: str, open_char: str, close_char: str, warnings: List[str]):
    """json.loads, then repair retries; None (plus a warning) when all fail."""
    cleaned = _strip_fences(text)
    candidate = _slice_outer(cleaned, open_char, close_char)
    if not candidate:
        warnings.append("No JSON found in model response")
        return None
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        logger.debug("Direct JSON parse failed (%s); trying repair", e)

    # A truncated response may end after an inner close: repair the whole tail first
    tail = cleaned[cleaned.find(open_char):]
    attempts = [tail, candidate] if tail != candidate else [candidate]
    error = None
    for attempt in attempts:
        try:
            parsed = json.loads(repair_json(attempt))
        except json.JSONDecodeError as e:
            error = e
            continue
        warnings.append("Model response JSON was malformed and has been repaired")
        return parsed

    logger.debug("Repaired JSON still invalid: %s", error)
    warnings.append(f"Model response could not be parsed as JSON: {error.msg}")
    return None


# ---------------------------------------------------------------------------
# Extraction results
# ---------------------------------------------------------------------------

def _string_options(raw) -> List[str]:
    if not isinstance(raw, list):
        return []
    return [opt.strip() for opt in raw if isinstance(opt, str) and opt.strip()]


def _spec_name(raw) -> str:
    if not isinstance(raw, dict):
        return ''
    name = raw.get('name', raw.get('spec_name', ''))
    return name.strip() if isinstance(name, str) else ''


def _coerce_entries(raw, priority: int, category: str) -> List[SpecEntry]:
    """One dict or a list of dicts -> named SpecEntry objects at a fixed weight."""
    items = raw if isinstance(raw, list) else [raw]
    entries = []
    for item in items:
        spec = SpecEntry.from_dict(item, priority=priority, category=category)
        if spec is not None and spec.name:
            entries.append(spec)
    return entries


def _validate_extraction(parsed, warnings: List[str]) -> ExtractionResult:
    result = ExtractionResult(warnings=warnings)
    if not isinstance(parsed, dict):
        warnings.append("Model response is not a JSON object")
        return result

    config_name = _spec_name(parsed.get('config'))
    if config_name:
        options = [
            opt for opt in _string_options(parsed['config'].get('options'))
            if len(opt) < MAX_OPTION_LENGTH and opt.lower() != config_name.lower()
        ][:MAX_CONFIG_OPTIONS]
        result.config = SpecEntry(name=config_name, options=tuple(options),
                                  priority=CONFIG_PRIORITY, category=CATEGORY_CONFIG)

    raw_keys = parsed.get('keys')
    if isinstance(raw_keys, list):
        for raw in raw_keys:
            name = _spec_name(raw)
            if not name or name.lower() == config_name.lower():
                continue
            options = _string_options(raw.get('options'))[:MAX_KEY_OPTIONS]
            if not options:
                continue
            result.keys.append(SpecEntry(name=name, options=tuple(options),
                                         priority=KEY_PRIORITY, category=CATEGORY_KEY))
        if len(result.keys) > MAX_KEYS:
            warnings.append(f"Kept the first {MAX_KEYS} of {len(result.keys)} key specs")
            result.keys = result.keys[:MAX_KEYS]

    raw_buyers = parsed.get('buyers')
    if isinstance(raw_buyers, list):
        for raw in raw_buyers[:MAX_BUYERS]:
            name = _spec_name(raw)
            options = _string_options(raw.get('options')) if name else []
            if name and options:
                result.buyers.append(SpecEntry(name=name, options=tuple(options),
                                               priority=BUYER_PRIORITY, category=CATEGORY_BUYER))

    if result.is_empty:
        warnings.append("Model response contained no usable specifications")
    return result


def parse_extraction_response(response) -> ExtractionResult:
    """
    Turn a model response into a validated ExtractionResult.

    Accepts the already-decoded dict or the raw response text. Text goes
    through fence stripping, outermost-object slicing, json.loads, and one
    repair retry.

    Validation:
        config: options are non-empty strings shorter than 50 chars, not the
                config name itself; at most 8
        keys:   a string name other than the config name; at most 6 options,
                at least 1; at most 3 keys
        buyers: a name and options; at most 2

    Never raises; problems are reported in result.warnings.
    """
    warnings: List[str] = []
    try:
        if isinstance(response, dict):
            parsed = response
        elif isinstance(response, str):
            parsed = _load_json(response, '{', '}', warnings)
            if parsed is None:
                return ExtractionResult(warnings=warnings)
        else:
            warnings.append(f"Unsupported model response type: {type(response).__name__}")
            return ExtractionResult(warnings=warnings)
        return _validate_extraction(parsed, warnings)
    except Exception:
        logger.warning("Extraction response parsing failed", exc_info=True)
        warnings.append("Model response could not be processed")
        return ExtractionResult(warnings=warnings)


# ---------------------------------------------------------------------------
# Seller specs (stage-1 payload)
# ---------------------------------------------------------------------------

def flatten_seller_specs(stage1) -> List[SpecEntry]:
    """
    Flatten a stage-1 payload into tiered seller specs.

    Walks seller_specs[].mcats[].finalized_specs.finalized_{primary,secondary,tertiary}_specs.specs[]
    where each spec is {spec_name, options, input_type}. Missing levels are skipped.
    """
    if not isinstance(stage1, dict):
        return []

    specs: List[SpecEntry] = []
    for seller in stage1.get('seller_specs') or []:
        if not isinstance(seller, dict):
            continue
        for mcat in seller.get('mcats') or []:
            finalized = mcat.get('finalized_specs') if isinstance(mcat, dict) else None
            if not isinstance(finalized, dict):
                continue
            for section, tier in SELLER_SPEC_SECTIONS:
                block = finalized.get(section)
                if not isinstance(block, dict):
                    continue
                for raw in block.get('specs') or []:
                    spec = SpecEntry.from_dict(raw, tier=tier)
                    if spec is None or not spec.name:
                        logger.debug("Skipping nameless %s entry: %r", section, raw)
                        continue
                    specs.append(spec)
    return specs


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

def _not_audited(specs: List[SpecEntry], explanation: str) -> List[AuditFinding]:
    return [AuditFinding(specification=s.name, status=AUDIT_STATUS_NOT_AUDITED,
                         explanation=explanation) for s in specs if s.name]


def _finding_from_dict(raw) -> Optional[AuditFinding]:
    if not isinstance(raw, dict):
        return None
    name = raw.get('specification', raw.get('spec_name'))
    if not isinstance(name, str) or not name.strip():
        return None
    status = raw.get('status')
    status = status.strip().lower() if isinstance(status, str) else ''
    if status not in (AUDIT_STATUS_CORRECT, AUDIT_STATUS_INCORRECT):
        status = AUDIT_STATUS_NOT_AUDITED
    explanation = raw.get('explanation')
    return AuditFinding(
        specification=name.strip(),
        status=status,
        explanation=explanation if isinstance(explanation, str) else '',
        problematic_options=_string_options(raw.get('problematic_options')),
    )


def parse_audit_response(response, specs) -> List[AuditFinding]:
    """
    Parse the model's audit verdicts: a JSON array of
    {specification, status, explanation, problematic_options}.

    If nothing parses, every spec comes back as 'not-audited'. A verdict is
    never invented.
    """
    seller = coerce_specs(specs)
    warnings: List[str] = []
    try:
        if isinstance(response, list):
            parsed = response
        elif isinstance(response, str):
            parsed = _load_json(response, '[', ']', warnings)
        else:
            parsed = None
    except Exception:
        logger.warning("Audit response parsing failed", exc_info=True)
        parsed = None

    if not isinstance(parsed, list):
        logger.debug("Audit response unusable (%s); marking specs not audited", '; '.join(warnings))
        return _not_audited(seller, "Audit response could not be parsed")

    findings = [f for f in (_finding_from_dict(raw) for raw in parsed) if f is not None]
    if not findings:
        return _not_audited(seller, "Audit response contained no findings")
    return findings


def _match_finding(spec: SpecEntry, findings: List[AuditFinding]) -> Optional[AuditFinding]:
    lowered = spec.name.strip().lower()
    for finding in findings:
        if finding.specification.strip().lower() == lowered:
            return finding
    for finding in findings:
        if specs_similar(spec.name, finding.specification):
            return finding
    return None


def merge_audit_results(specs, findings: List[AuditFinding]) -> List[dict]:
    """
    One row per seller spec with its audit verdict attached.

    A finding is matched by case-insensitive name, then by similar name;
    specs the audit skipped get status 'not-audited'.
    """
    rows = []
    findings = [f for f in findings or [] if isinstance(f, AuditFinding)]
    for spec in coerce_specs(specs):
        if not spec.name:
            continue
        finding = _match_finding(spec, findings) or AuditFinding(specification=spec.name)
        row = spec.to_dict()
        row.update({
            'status': finding.status,
            'explanation': finding.explanation,
            'problematic_options': list(finding.problematic_options),
        })
        rows.append(row)
    return rows


def audit_summary(rows: List[dict]) -> Tuple[int, int, int]:
    """(correct, incorrect, not_audited) counts of merged audit rows."""
    statuses = [row.get('status') for row in rows]
    return (statuses.count(AUDIT_STATUS_CORRECT),
            statuses.count(AUDIT_STATUS_INCORRECT),
            statuses.count(AUDIT_STATUS_NOT_AUDITED))
