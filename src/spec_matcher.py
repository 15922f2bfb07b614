"""
Core matching rules for ISQ specification reconciliation.

Matching Approach:
    - Spec names are canonicalized token by token through one shared alias table
      ("thk" -> "thickness", "colour" -> "color"), deduplicated, and stripped of
      filler words ("sheet", "plate", "of", ...)
    - Two names are similar when their normalized forms are equal, one contains
      the other, or both hit the same synonym group
    - Option values go through an ordered rule chain; the first rule that fires
      decides:
        1. Exact        - case/whitespace-insensitive, or equal after material/shape aliases
        2. Grade        - "SS304" == "304", "SS 304L" == "304 L"; different grades never match
        3. Measurement  - converted to mm, within max(0.1mm, 1%), or overlapping ranges
        4. Containment  - a bare value inside the other side's stated range
    - Unitless values below 100 are assumed to be mm; 100 and above are ambiguous
      and never match (see UNIT_INFERENCE_LIMIT_MM)

Name similarity is symmetric but NOT transitive: "size" ~ "length size" and
"length size" ~ "length" does not make "size" ~ "length". Callers grouping
more than two names must compare pairwise.

Everything here is a pure function. Malformed input (None, non-strings, blank
strings) degrades to '' / False / None, never an exception.
"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from rapidfuzz import fuzz

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
UNIT_INFERENCE_LIMIT_MM = 100.0  # Unitless values strictly below this are read as mm
ABS_TOLERANCE_MM = 0.1           # Absolute tolerance floor for single measurements
REL_TOLERANCE = 0.01             # Relative tolerance against the smaller value
_FLOAT_SLACK = 1e-9              # Absorbs binary rounding (1.0 vs 1.1 at the 0.1 floor)

# Tokens shorter than this only get exact alias substitution ("od" must not become "model")
MIN_FUZZY_ALIAS_TOKEN = 3

OPTION_KIND_GRADE = "grade"
OPTION_KIND_MEASUREMENT = "measurement"
OPTION_KIND_TEXT = "text"

RULE_EXACT = "exact"
RULE_GRADE = "grade"
RULE_GRADE_MISMATCH = "grade_mismatch"
RULE_MEASUREMENT = "measurement"
RULE_RANGE_OVERLAP = "range_overlap"
RULE_RANGE_CONTAINMENT = "range_containment"
RULE_NO_MATCH = "no_match"


# ---------------------------------------------------------------------------
# Spec name normalization
# ---------------------------------------------------------------------------

# Iteration order matters: the fuzzy fallback takes the first key that
# contains (or is contained in) the token.
SPEC_NAME_ALIASES: Dict[str, str] = {
    'material': 'material',
    'grade': 'grade',
    'thk': 'thickness',
    'thickness': 'thickness',
    'type': 'type',
    'shape': 'shape',
    'size': 'size',
    'dimension': 'size',
    'length': 'length',
    'width': 'width',
    'height': 'height',
    'dia': 'diameter',
    'diameter': 'diameter',
    'color': 'color',
    'colour': 'color',
    'finish': 'finish',
    'surface': 'finish',
    'weight': 'weight',
    'wt': 'weight',
    'capacity': 'capacity',
    'brand': 'brand',
    'model': 'model',
    'quality': 'quality',
    'standard': 'standard',
    'specification': 'spec',
    'spec': 'spec',
    'perforation': 'hole',
    'hole': 'hole',
    'pattern': 'pattern',
    'design': 'design',
    'application': 'application',
    'usage': 'application',
}

# Removed after alias substitution; never themselves alias-substituted
NAME_FILLER_WORDS = frozenset({
    'sheet', 'plate', 'pipe', 'rod', 'bar',
    'in', 'for', 'of', 'the', 'and', 'or',
})

SPEC_SYNONYM_GROUPS: List[Tuple[str, ...]] = [
    ('material', 'composition', 'fabric'),
    ('grade', 'quality', 'class', 'standard'),
    ('thickness', 'thk', 'gauge'),
    ('size', 'dimension', 'measurement'),
    ('diameter', 'dia', 'bore'),
    ('length', 'long', 'lng'),
    ('width', 'breadth', 'wide'),
    ('height', 'high', 'depth'),
    ('color', 'colour', 'shade'),
    ('finish', 'surface', 'coating', 'polish'),
    ('weight', 'wt', 'mass'),
    ('type', 'kind', 'variety', 'style'),
    ('shape', 'form', 'profile'),
    ('hole', 'perforation', 'aperture'),
    ('pattern', 'design', 'arrangement'),
    ('application', 'use', 'purpose', 'usage'),
]

_NAME_PUNCTUATION = re.compile(r'[()\-_,.;]')


def _canonical_name_token(token: str) -> str:
    """Map one name token through the alias table (exact hit first, then substring)."""
    if token in NAME_FILLER_WORDS:
        return token
    exact = SPEC_NAME_ALIASES.get(token)
    if exact:
        return exact
    if len(token) < MIN_FUZZY_ALIAS_TOKEN:
        return token
    for key, canonical in SPEC_NAME_ALIASES.items():
        if token in key or key in token:
            return canonical
    return token


@lru_cache(maxsize=20000)
def _normalize_spec_name_cached(name: str) -> str:
    s = _NAME_PUNCTUATION.sub(' ', name.lower().strip())
    tokens = [_canonical_name_token(t) for t in s.split() if t]
    # dict.fromkeys keeps first-seen order
    unique = list(dict.fromkeys(tokens))
    return ' '.join(t for t in unique if t not in NAME_FILLER_WORDS).strip()


def normalize_spec_name(name: str) -> str:
    """
    Canonicalize a specification name into a comparable token string.

    Steps:
        1. Lowercase, trim, turn ()-_,.; into spaces
        2. Split on whitespace
        3. Alias each token ("thk" -> "thickness"); tokens with no exact alias
           fall back to the first alias key they contain or are contained in
        4. Drop repeated tokens, keeping the first
        5. Drop filler words (sheet, plate, pipe, rod, bar, in, for, of, the, and, or)

    Idempotent: normalize_spec_name(normalize_spec_name(x)) == normalize_spec_name(x).

    Examples:
        'Thk (mm)'            -> 'thickness mm'
        'Sheet Thickness'     -> 'thickness'
        'Colour'              -> 'color'
        'Surface Finish'      -> 'finish'
        None                  -> ''
    """
    if not isinstance(name, str) or not name.strip():
        return ''
    return _normalize_spec_name_cached(name)


def specs_similar(name_a: str, name_b: str) -> bool:
    """
    Decide whether two specification names denote the same attribute.

    Short-circuits in order: blank input -> False; equal normalized forms;
    one normalized form contains the other; both hit the same synonym group.

    Examples:
        ✓ specs_similar('Thk', 'Thickness')         (alias)
        ✓ specs_similar('Sheet Thickness', 'Thk')   (filler word dropped)
        ✓ specs_similar('Grade', 'Quality Class')   (synonym group)
        ✗ specs_similar('Width', 'Length')
    """
    if not isinstance(name_a, str) or not isinstance(name_b, str):
        return False
    if not name_a.strip() or not name_b.strip():
        return False

    norm_a = normalize_spec_name(name_a)
    norm_b = normalize_spec_name(name_b)

    if not norm_a or not norm_b:
        # Names made only of filler words carry no attribute: only identical text matches.
        # An empty form must never reach the containment check ('' is in everything).
        return not norm_a and not norm_b and name_a.strip().lower() == name_b.strip().lower()

    if norm_a == norm_b:
        return True
    if norm_a in norm_b or norm_b in norm_a:
        return True

    for group in SPEC_SYNONYM_GROUPS:
        if any(word in norm_a for word in group) and any(word in norm_b for word in group):
            return True
    return False


def name_similarity_score(name_a: str, name_b: str) -> float:
    """
    Token-sort similarity (0-100) of two normalized spec names.

    Diagnostic and tie-ranking only: specs_similar() alone decides whether two
    names match.
    """
    norm_a = normalize_spec_name(name_a)
    norm_b = normalize_spec_name(name_b)
    if not norm_a or not norm_b:
        return 0.0
    return round(fuzz.token_sort_ratio(norm_a, norm_b), 2)


# ---------------------------------------------------------------------------
# Option normalization
# ---------------------------------------------------------------------------

LENGTH_UNITS_TO_MM: Dict[str, float] = {
    'mm': 1.0, 'millimeter': 1.0, 'millimeters': 1.0, 'millimetre': 1.0, 'millimetres': 1.0,
    'cm': 10.0, 'centimeter': 10.0, 'centimeters': 10.0, 'centimetre': 10.0, 'centimetres': 10.0,
    'm': 1000.0, 'meter': 1000.0, 'meters': 1000.0, 'metre': 1000.0, 'metres': 1000.0,
    'in': 25.4, 'inch': 25.4, 'inches': 25.4, '"': 25.4, '″': 25.4,
    'ft': 304.8, 'feet': 304.8, 'foot': 304.8, "'": 304.8, '′': 304.8,
}

# Whole-word material and shape equivalences, resolved on the text form.
# Longer phrases are substituted first.
OPTION_ALIASES: Dict[str, str] = {
    'stainless steel': 'ss',
    'mild steel': 'ms',
    'carbon steel': 'ms',
    'galvanized iron': 'gi',
    'galvanised iron': 'gi',
    'aluminum': 'aluminium',
    'circular': 'round',
    'circle': 'round',
    'squared': 'square',
    'rectangle': 'rectangular',
    'hexagon': 'hexagonal',
    'tubular': 'pipe',
    'tube': 'pipe',
    'slot': 'slotted',
    'l shaped': 'angle',
    'l shape': 'angle',
    'c shaped': 'channel',
    'c shape': 'channel',
}

_UNIT_ALTERNATION = '|'.join(
    re.escape(unit) for unit in sorted(LENGTH_UNITS_TO_MM, key=len, reverse=True)
)
# Mixed numbers ("1-1/2", "1 1/2") are tried before plain numbers and ranges
_NUMBER = r'(\d+[ \-]\d+/\d+|\d+(?:\.\d+)?(?:/\d+(?:\.\d+)?)?|\.\d+)'
_UNIT = rf'(?:({_UNIT_ALTERNATION})(?![a-z]))?'
_RANGE_SEPARATOR = r'(?:to|-|–|—|~)'

_RANGE_RE = re.compile(rf'^\s*{_NUMBER}\s*{_UNIT}\s*{_RANGE_SEPARATOR}\s*{_NUMBER}\s*{_UNIT}')
_SINGLE_RE = re.compile(rf'^\s*{_NUMBER}\s*{_UNIT}')
_NUMBER_WITH_UNIT_RE = re.compile(rf'(?<![\d.]){_NUMBER}\s*({_UNIT_ALTERNATION})(?![a-z])')

_GRADE_PREFIX_RE = re.compile(r'^(?:(?:stainless\s*steel|ss|grade)[\s\-:.]*)+')
_GRADE_RE = re.compile(r'(?<![\d.])(\d{3})(?:[\s\-]?([a-z]))?(?![a-z\d.])')
_DIMENSION_RE = re.compile(r'\d\s*[x×*]\s*\.?\d')   # "300 x 600", "300x600"

_OPTION_ALIAS_RE = re.compile(
    r'\b(' + '|'.join(
        re.escape(phrase) for phrase in sorted(OPTION_ALIASES, key=len, reverse=True)
    ) + r')\b'
)


@dataclass(frozen=True)
class NormalizedOption:
    """
    Canonical view of one option value.

    kind is the highest-priority form found: 'grade' ("304L"), then
    'measurement' (low_mm/high_mm, equal for a single value), then 'text'.
    text (lowercase, whitespace collapsed, material/shape aliases resolved) is
    always filled so callers can fall back to it.
    """
    kind: str
    text: str
    grade: str = ''
    low_mm: Optional[float] = None
    high_mm: Optional[float] = None
    is_range: bool = False

    @property
    def has_measurement(self) -> bool:
        return self.low_mm is not None


def _compact(value: str) -> str:
    """Lowercase and strip ALL whitespace: '1 MM' -> '1mm'."""
    return re.sub(r'\s+', '', value.lower())


def _clean_option_text(value: str) -> str:
    s = re.sub(r'\s+', ' ', value.lower()).strip()
    return _OPTION_ALIAS_RE.sub(lambda m: OPTION_ALIASES[m.group(1)], s)


def _parse_number(text: str) -> Optional[float]:
    """'2.5' -> 2.5, '1/2' -> 0.5, '.75' -> 0.75, '1-1/2' -> 1.5."""
    try:
        whole, sep, fraction = text.replace('-', ' ').partition(' ')
        if sep:
            fraction_value = _parse_number(fraction)
            return None if fraction_value is None else float(whole) + fraction_value
        if '/' in text:
            numerator, denominator = text.split('/', 1)
            denominator_value = float(denominator)
            if denominator_value == 0:
                return None
            return float(numerator) / denominator_value
        return float(text)
    except ValueError:
        return None


def _to_mm(number_text: str, unit: Optional[str], unit_inference_limit: float) -> Optional[float]:
    value = _parse_number(number_text)
    if value is None:
        return None
    if unit:
        return value * LENGTH_UNITS_TO_MM[unit]
    # No unit: small values are mm, anything at/above the limit is too ambiguous to guess
    if value < unit_inference_limit:
        return value
    return None


def extract_grade(value: str) -> str:
    """
    Extract a material grade token: three digits plus an optional single letter.

    Leading "stainless steel" / "ss" / "grade" are stripped first. Values that
    carry a length unit ("150-200 mm") are measurements, and "300 x 600" is a
    dimension; neither yields a grade.

    Examples:
        'SS304'        -> '304'
        'SS 304L'      -> '304L'
        '304 L'        -> '304L'
        'Grade 316-L'  -> '316L'
        '100 mm'       -> ''
        '316Ti'        -> ''
        '300 x 600'    -> ''
    """
    if not isinstance(value, str):
        return ''
    s = value.strip().lower()
    if not s or _NUMBER_WITH_UNIT_RE.search(s) or _DIMENSION_RE.search(s):
        return ''
    s = _GRADE_PREFIX_RE.sub('', s)
    match = _GRADE_RE.search(s)
    if not match:
        return ''
    return (match.group(1) + (match.group(2) or '')).upper()


def parse_measurement(
    value: str,
    unit_inference_limit: float = UNIT_INFERENCE_LIMIT_MM,
) -> Optional[Tuple[float, float, bool]]:
    """
    Parse a leading measurement or range into millimetres.

    Returns (low_mm, high_mm, is_range) or None. A single value is the
    degenerate range (v, v, False). Ranges accept "X to Y", "X-Y", "X–Y";
    a unit on either end applies to both. A unitless number counts only when
    nothing alphabetic follows it ("12" yes, "12 gauge" no).

    Examples:
        '1 mm'          -> (1.0, 1.0, False)
        '1 inch'        -> (25.4, 25.4, False)
        '1mm to 3mm'    -> (1.0, 3.0, True)
        '2-5 cm'        -> (20.0, 50.0, True)
        '50'            -> (50.0, 50.0, False)
        '100'           -> None   (ambiguous at the default limit)
    """
    if not isinstance(value, str):
        return None
    s = value.strip().lower()
    if not s:
        return None

    m = _RANGE_RE.match(s)
    if m:
        first, first_unit, second, second_unit = m.groups()
        first_unit = first_unit or second_unit
        second_unit = second_unit or first_unit
        if first_unit or not re.search(r'[a-z]', s[m.end():]):
            low = _to_mm(first, first_unit, unit_inference_limit)
            high = _to_mm(second, second_unit, unit_inference_limit)
            if low is None or high is None:
                return None
            if low > high:
                low, high = high, low
            return (low, high, True)

    m = _SINGLE_RE.match(s)
    if m:
        number, unit = m.groups()
        if not unit and re.search(r'[a-z]', s[m.end():]):
            return None
        mm = _to_mm(number, unit, unit_inference_limit)
        if mm is None:
            return None
        return (mm, mm, False)
    return None


def find_measurement(
    value: str,
    unit_inference_limit: float = UNIT_INFERENCE_LIMIT_MM,
) -> Optional[float]:
    """
    Find a bare single value (in mm) anywhere in an option: 'approx 2mm' -> 2.0.

    Falls back to the anchored parse for unitless values. Meant for the
    non-range side of a comparison: in "1-3 mm" it finds 3.
    """
    if not isinstance(value, str):
        return None
    s = value.strip().lower()
    m = _NUMBER_WITH_UNIT_RE.search(s)
    if m:
        return _to_mm(m.group(1), m.group(2), unit_inference_limit)
    parsed = parse_measurement(s, unit_inference_limit)
    if parsed and not parsed[2]:
        return parsed[0]
    return None


@lru_cache(maxsize=50000)
def _normalize_option_cached(value: str, unit_inference_limit: float) -> NormalizedOption:
    text = _clean_option_text(value)
    grade = extract_grade(value)
    measured = parse_measurement(value, unit_inference_limit)
    low, high, is_range = measured if measured else (None, None, False)

    if grade:
        kind = OPTION_KIND_GRADE
    elif measured:
        kind = OPTION_KIND_MEASUREMENT
    else:
        kind = OPTION_KIND_TEXT
    return NormalizedOption(kind=kind, text=text, grade=grade,
                            low_mm=low, high_mm=high, is_range=is_range)


def normalize_option(
    value: str,
    unit_inference_limit: float = UNIT_INFERENCE_LIMIT_MM,
) -> NormalizedOption:
    """
    Canonicalize an option value: grade token, else measurement in mm, else text.

    Non-strings and blank strings give an empty text option.
    """
    if not isinstance(value, str) or not value.strip():
        return NormalizedOption(kind=OPTION_KIND_TEXT, text='')
    return _normalize_option_cached(value, float(unit_inference_limit))


# ---------------------------------------------------------------------------
# Option matching
# ---------------------------------------------------------------------------

def _within_tolerance(v1: float, v2: float) -> bool:
    tolerance = max(ABS_TOLERANCE_MM, min(v1, v2) * REL_TOLERANCE)
    return abs(v1 - v2) <= tolerance + _FLOAT_SLACK


def _ranges_overlap(left: NormalizedOption, right: NormalizedOption) -> bool:
    return not (left.high_mm < right.low_mm or right.high_mm < left.low_mm)


def _range_contains_bare_value(
    ranged: NormalizedOption,
    other: NormalizedOption,
    other_raw: str,
    unit_inference_limit: float,
) -> bool:
    if not ranged.is_range or other.is_range:
        return False
    value = find_measurement(other_raw, unit_inference_limit)
    return value is not None and ranged.low_mm <= value <= ranged.high_mm


def _match_options(a: str, b: str, unit_inference_limit: float) -> Tuple[bool, str]:
    """Run the rule chain; returns (matched, rule_name)."""
    left = normalize_option(a, unit_inference_limit)
    right = normalize_option(b, unit_inference_limit)

    # RULE 1: exact, ignoring case and whitespace (also after material/shape aliases)
    if _compact(a) == _compact(b) or _compact(left.text) == _compact(right.text):
        return True, RULE_EXACT

    # RULE 2: grades are exclusive; a mismatch is never rescued by a later rule
    if left.grade and right.grade:
        if left.grade == right.grade:
            return True, RULE_GRADE
        return False, RULE_GRADE_MISMATCH

    # RULE 3: measurements in mm, tolerance for points, overlap once a range is involved
    if left.has_measurement and right.has_measurement:
        if not left.is_range and not right.is_range:
            if _within_tolerance(left.low_mm, right.low_mm):
                return True, RULE_MEASUREMENT
        elif _ranges_overlap(left, right):
            return True, RULE_RANGE_OVERLAP

    # RULE 4: a bare value from one side inside the other side's explicit range
    if (_range_contains_bare_value(left, right, b, unit_inference_limit) or
            _range_contains_bare_value(right, left, a, unit_inference_limit)):
        return True, RULE_RANGE_CONTAINMENT

    return False, RULE_NO_MATCH


def options_match(
    a: str,
    b: str,
    unit_inference_limit: float = UNIT_INFERENCE_LIMIT_MM,
) -> bool:
    """
    Decide whether two option values denote the same real-world value.

    Symmetric and deterministic. Blank or non-string input never matches.

    Examples:
        ✓ options_match('1 mm', '1mm')
        ✓ options_match('25.4mm', '1 inch')
        ✓ options_match('SS304', '304')
        ✓ options_match('1mm to 3mm', '2mm to 5mm')
        ✓ options_match('Mild Steel', 'MS')
        ✗ options_match('SS304', 'SS316')
        ✗ options_match('2mm', '5mm')
    """
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    if not a.strip() or not b.strip():
        return False
    try:
        return _match_options(a, b, unit_inference_limit)[0]
    except Exception:
        logger.warning("Option comparison failed for %r vs %r", a, b, exc_info=True)
        return False


def explain_option_match(
    a: str,
    b: str,
    unit_inference_limit: float = UNIT_INFERENCE_LIMIT_MM,
) -> dict:
    """
    Diagnostic breakdown of an option comparison.

    Purely diagnostic: options_match() makes the decision. Returns:
        match: bool
        rule:  which rule decided ('exact', 'grade', 'grade_mismatch',
               'measurement', 'range_overlap', 'range_containment', 'no_match')
        left / right: the NormalizedOption of each side
    """
    left = normalize_option(a, unit_inference_limit)
    right = normalize_option(b, unit_inference_limit)
    if not left.text or not right.text:
        return {'match': False, 'rule': RULE_NO_MATCH, 'left': left, 'right': right}
    try:
        matched, rule = _match_options(a, b, unit_inference_limit)
    except Exception:
        logger.warning("Option comparison failed for %r vs %r", a, b, exc_info=True)
        matched, rule = False, RULE_NO_MATCH
    return {'match': matched, 'rule': rule, 'left': left, 'right': right}


# ---------------------------------------------------------------------------
# Self-test: rule chain correctness
# ---------------------------------------------------------------------------

def self_test_option_matching() -> List[str]:
    """
    Run built-in sanity checks for name and option matching.

    Returns a list of failure messages (empty list = all passed).
    """
    failures: List[str] = []

    option_cases = [
        # (a, b, expected, description)
        ('1 mm', '1mm', True, 'Whitespace-only difference'),
        ('25.4mm', '1 inch', True, 'Inch converts to mm'),
        ('2mm', '5mm', False, 'Different thickness'),
        ('SS304', '304', True, 'SS prefix stripped from grade'),
        ('SS 304L', '304 L', True, 'Grade letter suffix with spaces'),
        ('SS304', 'SS316', False, 'Grade mismatch is final'),
        ('1mm to 3mm', '2mm to 5mm', True, 'Overlapping ranges'),
        ('1mm to 2mm', '5mm to 6mm', False, 'Disjoint ranges'),
        ('2.5 mm', '1-3 mm', True, 'Point inside range'),
        ('Mild Steel', 'MS', True, 'Material alias'),
        ('Round', 'Circular', True, 'Shape alias'),
        ('100', '100 mm', False, 'Unitless 100 is ambiguous'),
        ('99', '99 mm', True, 'Unitless 99 is mm'),
        ('Red', 'Blue', False, 'Different text'),
    ]
    for a, b, expected, desc in option_cases:
        for left, right in ((a, b), (b, a)):
            got = options_match(left, right)
            if got != expected:
                failures.append(
                    f"options_match({left!r}, {right!r}) = {got}, expected {expected} ({desc})"
                )

    name_cases = [
        ('Thk', 'Thickness', True, 'Alias'),
        ('Grade', 'Quality', True, 'Synonym group'),
        ('Sheet Thickness', 'Thickness', True, 'Filler word'),
        ('Width', 'Length', False, 'Different dimensions'),
        ('', 'Grade', False, 'Empty name'),
    ]
    for a, b, expected, desc in name_cases:
        got = specs_similar(a, b)
        if got != expected:
            failures.append(f"specs_similar({a!r}, {b!r}) = {got}, expected {expected} ({desc})")

    return failures
