"""
Reconciliation end to end:
- target specs from an extraction result
- 1:1 pairing by combined priority, common options
- buyer ISQ selection and back-fill
- two-sided comparison, coverage metrics
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from reconciler import (
    BuyerISQ,
    CATEGORY_CONFIG,
    CATEGORY_KEY,
    MatchedSpecPair,
    SpecEntry,
    Tier,
    build_target_specs,
    common_specs_frame,
    compare_spec_sets,
    compute_coverage_metrics,
    find_common_options,
    reconcile,
    run_reconciliation,
    select_buyer_isqs,
    self_test_reconciliation,
)


def config(name, options):
    return SpecEntry(name, tuple(options), priority=3, category=CATEGORY_CONFIG)


def key(name, options):
    return SpecEntry(name, tuple(options), priority=2, category=CATEGORY_KEY)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

def test_spec_entry_coerces_fields():
    spec = SpecEntry('Grade', ['304', 316, None, True, '  '], 'secondary')
    assert spec.options == ('304', '316', '  ')
    assert spec.tier == Tier.SECONDARY
    assert spec.priority == 2

    assert SpecEntry(None).name == ''
    assert SpecEntry('X', 'single').options == ('single',)
    assert SpecEntry('X', tier='bogus').tier == Tier.PRIMARY


def test_spec_entry_from_dict():
    spec = SpecEntry.from_dict({'spec_name': ' Grade ', 'options': ['304'], 'tier': 'Tertiary',
                                'input_type': 'radio_button'})
    assert spec.name == 'Grade'
    assert spec.tier == Tier.TERTIARY and spec.priority == 1
    assert spec.input_type == 'radio_button'
    assert SpecEntry.from_dict({'name': 'Finish', 'options': []}).name == 'Finish'
    assert SpecEntry.from_dict('not a dict') is None
    assert SpecEntry.from_dict({'spec_name': 'Grade'}, priority=2, category=CATEGORY_KEY).priority == 2


def test_tier_parse():
    cases = [
        ('Primary', Tier.PRIMARY),
        ('secondary', Tier.SECONDARY),
        ('finalized_tertiary_specs', Tier.TERTIARY),
        ('', Tier.PRIMARY),
        (None, Tier.PRIMARY),
        (Tier.SECONDARY, Tier.SECONDARY),
    ]
    for value, expected in cases:
        assert Tier.parse(value) == expected, f"Tier.parse({value!r})"


# ---------------------------------------------------------------------------
# Target specs
# ---------------------------------------------------------------------------

def test_build_target_specs_weights_and_order():
    extraction = {
        'config': {'name': 'Grade', 'options': ['304', '316']},
        'keys': [{'name': 'Thickness', 'options': ['1mm']}, {'name': 'Finish', 'options': []}],
        'buyers': [{'name': 'Width', 'options': ['1250mm']}],
    }
    targets = build_target_specs(extraction)
    assert [(t.name, t.priority, t.category) for t in targets] == [
        ('Grade', 3, 'config'),
        ('Thickness', 2, 'key'),
        ('Width', 1, 'buyer'),
    ]


def test_build_target_specs_empty_config():
    assert build_target_specs({'config': {'name': '', 'options': []}, 'keys': []}) == []
    assert build_target_specs(None) == []
    assert build_target_specs({'config': 'garbage', 'keys': 'garbage'}) == []


# ---------------------------------------------------------------------------
# SpecReconciler
# ---------------------------------------------------------------------------

def test_grade_scenario():
    sources = [SpecEntry('Grade', ('SS304', 'SS316', 'SS202'), Tier.PRIMARY)]
    pairs = reconcile(sources, [config('Grade', ['304', '316'])])
    assert len(pairs) == 1
    assert pairs[0].common_options == ('SS304', 'SS316')
    assert pairs[0].combined_priority == 6


def test_thickness_scenario():
    sources = [SpecEntry('Thickness', ('1mm', '2mm', '5mm'), Tier.PRIMARY)]
    pairs = reconcile(sources, [key('Thk', ['1 mm', '25.4mm'])])
    assert [p.common_options for p in pairs] == [('1mm',)]


def test_empty_extraction_scenario():
    sources = [SpecEntry('Thickness', ('1mm', '2mm'), Tier.PRIMARY)]
    targets = build_target_specs({'config': {'name': '', 'options': []}, 'keys': []})
    pairs = reconcile(sources, targets)
    assert pairs == []
    assert select_buyer_isqs(pairs, sources) == []


def test_one_target_per_source():
    sources = [
        SpecEntry('Thickness', ('1mm',)),
        SpecEntry('Thk', ('1mm',)),
        SpecEntry('Sheet Thickness', ('1mm',)),
    ]
    pairs = reconcile(sources, [key('Thickness', ['1mm'])])
    assert len(pairs) == 1
    assert pairs[0].source_spec.name == 'Thickness'


def test_target_indices_are_unique():
    sources = [SpecEntry(n, ('1mm',)) for n in ('Thickness', 'Thk', 'Grade', 'Quality', 'Colour')]
    targets = [key('Thickness', ['1mm']), key('Grade', ['304']), key('Color', ['Red']),
               key('Thk', ['2mm'])]
    pairs = reconcile(sources, targets)
    indices = [p.target_index for p in pairs]
    assert len(indices) == len(set(indices))
    assert len(pairs) == 4


def test_best_priority_target_wins():
    sources = [SpecEntry('Grade', ('304',), Tier.PRIMARY)]
    pairs = reconcile(sources, [key('Grade', ['304']), config('Grade', ['304'])])
    assert pairs[0].target_index == 1
    assert pairs[0].combined_priority == 6


def test_priority_tie_keeps_first_target():
    sources = [SpecEntry('Grade', ('304',), Tier.PRIMARY)]
    pairs = reconcile(sources, [key('Grade', ['316']), key('Quality', ['304'])])
    assert pairs[0].target_index == 0
    assert pairs[0].common_options == ()


def test_pairs_sorted_by_priority_stable():
    sources = [
        SpecEntry('Colour', ('Red',), Tier.TERTIARY),
        SpecEntry('Finish', ('Matte',), Tier.TERTIARY),
        SpecEntry('Grade', ('304',), Tier.PRIMARY),
    ]
    targets = [key('Color', ['Red']), key('Finish', ['Matte']), config('Grade', ['304'])]
    pairs = reconcile(sources, targets)
    assert [p.source_spec.name for p in pairs] == ['Grade', 'Colour', 'Finish']


def test_duplicate_source_names_pair_once():
    sources = [SpecEntry('Grade', ('304',)), SpecEntry('Grade', ('316',))]
    pairs = reconcile(sources, [key('Grade', ['304']), key('Grade', ['316'])])
    assert len(pairs) == 1
    assert pairs[0].common_options == ('304',)


def test_duplicate_source_name_still_consumes_its_target():
    # The second Grade pairs with Quality (synonym) before being dropped,
    # so the later Quality source finds nothing left.
    sources = [SpecEntry('Grade', ('304',)), SpecEntry('Grade', ('316',)),
               SpecEntry('Quality', ('316',))]
    pairs = reconcile(sources, [key('Grade', ['304']), key('Quality', ['316'])])
    assert [(p.source_spec.name, p.target_index) for p in pairs] == [('Grade', 0)]
    assert pairs[0].common_options == ('304',)


def test_reconcile_tolerates_malformed_input():
    targets = [key('Grade', ['304'])]
    assert reconcile(None, targets) == []
    assert reconcile([], targets) == []
    assert reconcile([SpecEntry('Grade', ('304',))], []) == []
    assert reconcile(['junk', 42, {'spec_name': None}], targets) == []
    pairs = reconcile([{'spec_name': 'Grade', 'options': ['SS304']}], targets)
    assert pairs[0].common_options == ('SS304',)


def test_find_common_options_greedy():
    cases = [
        # (source, target, expected, description)
        (['2mm', '2 mm'], ['2mm'], ['2mm'], 'Each target option used once'),
        (['2mm', '2 mm'], ['2mm', '2.0mm'], ['2mm', '2 mm'], 'Two targets, two sources'),
        (['SS202', 'SS304'], ['304'], ['SS304'], 'Source order, source wording'),
        (['', 'Red'], ['', 'red'], ['Red'], 'Blank options skipped'),
        ([], ['304'], [], 'Empty source'),
    ]
    for source, target, expected, desc in cases:
        assert find_common_options(source, target) == expected, desc


# ---------------------------------------------------------------------------
# BuyerSelector
# ---------------------------------------------------------------------------

def _pair(name, common, options=()):
    source = SpecEntry(name, tuple(options or common))
    return MatchedSpecPair(source, key(name, common), tuple(common), 5, 0)


def test_backfill_skips_duplicates_and_other():
    raw = [SpecEntry('Color', ('Red', 'Blue', 'Green', 'Other'))]
    buyers = select_buyer_isqs([_pair('Color', ['Red'])], raw)
    assert buyers == [BuyerISQ('Color', ('Red', 'Blue', 'Green'))]


def test_selection_bounds():
    raw = [SpecEntry('Grade', tuple(f'{n}' for n in range(300, 320))),
           SpecEntry('Finish', ('Matte', 'MATTE', ' matte ', 'Glossy')),
           SpecEntry('Width', ('1m',))]
    pairs = [_pair('Grade', ['300']), _pair('Finish', ['Matte']), _pair('Width', ['1m'])]

    buyers = select_buyer_isqs(pairs, raw)
    assert len(buyers) == 2
    assert len(buyers[0].options) == 8
    assert buyers[1].options == ('Matte', 'Glossy')

    buyers = select_buyer_isqs(pairs, raw, max_specs=1, max_options=3)
    assert [(b.name, b.options) for b in buyers] == [('Grade', ('300', '301', '302'))]

    for b in select_buyer_isqs(pairs, raw, max_specs=5, max_options=4):
        keys = [o.lower().replace(' ', '') for o in b.options]
        assert len(keys) == len(set(keys)) and len(keys) <= 4


def test_backfill_from_similar_raw_spec():
    raw = [SpecEntry('Sheet Thickness', ('1mm', '2mm', '3mm'))]
    pair = MatchedSpecPair(SpecEntry('Thickness', ('1mm',)), key('Thk', ['1mm']), ('1mm',), 5, 0)
    buyers = select_buyer_isqs([pair], raw)
    assert buyers[0].options == ('1mm', '2mm', '3mm')


def test_empty_placeholder():
    raw = [SpecEntry('Color', ('Other',))]
    pair = MatchedSpecPair(raw[0], key('Colour', ['Blue']), (), 3, 0)
    assert select_buyer_isqs([pair], raw)[0].options == ()
    assert select_buyer_isqs([pair], raw, empty_placeholder='No options')[0].options == ('No options',)


def test_select_tolerates_malformed_input():
    assert select_buyer_isqs([], []) == []
    assert select_buyer_isqs(None, None) == []
    assert select_buyer_isqs([_pair('Grade', ['304'])], None, max_specs=0) == []
    assert select_buyer_isqs(['junk'], []) == []


# ---------------------------------------------------------------------------
# End-to-end and reporting
# ---------------------------------------------------------------------------

def test_run_reconciliation_to_dict():
    sellers = [{'spec_name': 'Grade', 'options': ['SS304', 'SS316', 'SS202'], 'tier': 'Primary'},
               {'spec_name': 'Thickness', 'options': ['1mm', '2mm'], 'tier': 'Secondary'}]
    extraction = {'config': {'name': 'Grade', 'options': ['304', '316']},
                  'keys': [{'name': 'Thk', 'options': ['2 mm']}]}
    result = run_reconciliation(sellers, extraction).to_dict()

    assert [c['spec_name'] for c in result['common_specs']] == ['Grade', 'Thickness']
    assert result['common_specs'][0]['options'] == ['SS304', 'SS316']
    assert result['common_specs'][1]['options'] == ['2mm']
    assert result['buyer_isqs'][0] == {'spec_name': 'Grade', 'options': ['SS304', 'SS316', 'SS202'],
                                      'category': 'buyer'}
    assert result['buyer_isqs'][1]['options'] == ['2mm', '1mm']


def test_compare_spec_sets():
    left = [SpecEntry('Grade', ('304', '316', '202')), SpecEntry('Width', ('1m',))]
    right = [SpecEntry('Grade', ('SS304', '430')), SpecEntry('Finish', ('Matte',))]
    comparison = compare_spec_sets(left, right)

    assert len(comparison.matched) == 1
    diff = comparison.matched[0]
    assert diff.common_options == ['304']
    assert diff.left_unique_options == ['316', '202']
    assert diff.right_unique_options == ['430']
    assert [s.name for s in comparison.left_only] == ['Width']
    assert [s.name for s in comparison.right_only] == ['Finish']
    assert comparison.to_dict()['matched'][0]['other_spec_name'] == 'Grade'


def test_coverage_metrics():
    sellers = [SpecEntry('Grade', ('SS304', 'SS316', 'SS202')), SpecEntry('Width', ('1m',))]
    result = run_reconciliation(sellers, {'config': {'name': 'Grade', 'options': ['304', '316']}})
    metrics = compute_coverage_metrics(result, sellers)

    assert metrics['seller_spec_count'] == 2
    assert metrics['common_spec_count'] == 1
    assert metrics['common_spec_rate'] == 50.0
    assert metrics['tier_breakdown'] == {'Primary': 1}
    assert metrics['option_coverage_rate'] == 66.7
    assert metrics['empty_common_count'] == 0
    assert metrics['buyer_isq_count'] == 1
    assert metrics['buyer_option_count'] == 3


def test_coverage_metrics_empty():
    result = run_reconciliation([SpecEntry('Grade', ('304',))], {})
    metrics = compute_coverage_metrics(result, [SpecEntry('Grade', ('304',))])
    assert metrics['common_spec_count'] == 0
    assert metrics['common_spec_rate'] == 0.0


def test_common_specs_frame():
    pairs = reconcile([SpecEntry('Grade', ('SS304', 'SS316'))], [config('Grade', ['304'])])
    df = common_specs_frame(pairs)
    assert list(df['spec_name']) == ['Grade']
    assert df.loc[0, 'common_options'] == 'SS304'
    assert df.loc[0, 'source_option_count'] == 2
    assert common_specs_frame([]).empty


def test_self_test_reconciliation():
    assert self_test_reconciliation() == []


def _run_all():
    passed = failed = 0
    for name, fn in sorted(globals().items()):
        if name.startswith('test_') and callable(fn):
            try:
                fn()
                print(f"PASS: {name}")
                passed += 1
            except AssertionError as e:
                print(f"FAIL: {name}: {e}")
                failed += 1
    print(f"\n{passed} passed, {failed} failed")
    return failed


if __name__ == '__main__':
    sys.exit(1 if _run_all() else 0)
