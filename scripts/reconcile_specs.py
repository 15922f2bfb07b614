"""
Reconcile a seller spec file against a saved extraction response.

Prints the result ({common_specs, buyer_isqs}) as JSON on stdout and a
coverage summary on stderr.

Usage:
    python scripts/reconcile_specs.py --seller specs.xlsx --extraction response.json
    python scripts/reconcile_specs.py --seller stage1.json --extraction response.txt --max-specs 3 -v
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
import argparse
import json
import logging

from extraction import parse_extraction_response
from reconciler import (
    MAX_BUYER_OPTIONS,
    MAX_BUYER_SPECS,
    compute_coverage_metrics,
    run_reconciliation,
)
from seller_specs import load_seller_specs
from spec_matcher import UNIT_INFERENCE_LIMIT_MM

logger = logging.getLogger('reconcile_specs')


def read_extraction(path: str):
    """Raw model text or a saved JSON object; the tolerant parser handles both."""
    with open(path, 'r', encoding='utf-8') as f:
        text = f.read()
    return parse_extraction_response(text)


def print_summary(metrics: dict, warnings) -> None:
    err = sys.stderr
    print(f"Seller specs:        {metrics['seller_spec_count']}", file=err)
    print(f"Common specs:        {metrics['common_spec_count']} "
          f"({metrics['common_spec_rate']}%)", file=err)
    for tier, count in metrics['tier_breakdown'].items():
        print(f"  {tier:<18} {count}", file=err)
    print(f"Option coverage:     {metrics['option_coverage_rate']}%", file=err)
    print(f"Buyer ISQs:          {metrics['buyer_isq_count']} "
          f"({metrics['buyer_option_count']} options)", file=err)
    for warning in warnings:
        print(f"WARNING: {warning}", file=err)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.split('\n\n')[0])
    parser.add_argument('--seller', required=True, help='Seller specs (.xlsx, .csv or .json)')
    parser.add_argument('--sheet', default=None, help='Sheet name for .xlsx input')
    parser.add_argument('--extraction', required=True,
                        help='Extraction response (JSON or raw model text)')
    parser.add_argument('--max-specs', type=int, default=MAX_BUYER_SPECS)
    parser.add_argument('--max-options', type=int, default=MAX_BUYER_OPTIONS)
    parser.add_argument('--unit-limit', type=float, default=UNIT_INFERENCE_LIMIT_MM,
                        help='Unitless values below this are read as mm')
    parser.add_argument('--verbose', '-v', action='store_true')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    try:
        seller_specs = load_seller_specs(args.seller, sheet_name=args.sheet)
        extraction = read_extraction(args.extraction)
    except FileNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    except (OSError, ValueError) as e:
        logger.debug("Input load failed", exc_info=True)
        print(f"ERROR: could not read input: {e}", file=sys.stderr)
        return 1

    result = run_reconciliation(
        seller_specs,
        extraction,
        max_specs=args.max_specs,
        max_options=args.max_options,
        unit_inference_limit=args.unit_limit,
    )

    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    print_summary(compute_coverage_metrics(result, seller_specs), extraction.warnings)
    return 0


if __name__ == '__main__':
    sys.exit(main())
