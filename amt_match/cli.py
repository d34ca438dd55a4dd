"""Command-line interface for amt-match.

Accurate Mass and Time (AMT) matching: build a peptide database from MS/MS
identifications, align its runs, and identify MS1 features by mass and
normalized hydrophobicity with EM-calibrated match probabilities.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import yaml

from . import __version__
from .alignment import TimeHydrophobicityMapper, align_all_runs_using_common_peptides
from .chemistry import modifications_from_config
from .data_io import load_database, load_features, save_database, save_database_tsv, save_match_results
from .database import remove_hydrophobicity_outliers, remove_predicted_hydrophobicity_outliers
from .exceptions import AmtError
from .pipeline import (
    AmtDatabaseMatcher,
    MatchingParameters,
    build_database_from_identifications,
    match_feature_sets,
)
from .probability import ProbabilityParameters
from .regression import RegressionService
from .validation import match_with_decoy_split

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'modifications': [],
        'database': {
            'min_peptide_prophet': 0.9,
            'ignore_unknown_modifications': False,
            'align_runs': True,
            'min_matched_peptides': 30,
            'predicted_outlier_difference': 0.4,
            'outlier_std_multiple': 3.0,
        },
        'matching': {
            'matcher_kind': 'window2d',
            'delta_mass': 10.0,
            'delta_mass_type': 'ppm',
            'delta_elution': 0.15,
            'decoy_mass_offset': 11.0,
            'min_embedded_ms2_prophet': 0.9,
            'calibrate_masses': False,
        },
        'alignment': {
            'degree': 1,
            'leverage_numerator': 4.0,
            'max_studentized_residual': 2.0,
            'modal_min_points': 85,
            'mass_match_delta': 5.0,
            'mass_match_delta_type': 'ppm',
            'reduce_database': False,
            'min_runs_to_keep': 1,
            'max_runs_to_keep': None,
        },
        'probability': {
            'min_em_iterations': 30,
            'max_em_iterations': 200,
            'max_delta_proportion': 0.005,
            'iterations_for_stability': 1,
            'min_match_probability': 0.1,
            'max_match_fdr': 1.0,
            'max_second_best_probability': 0.5,
            'min_second_best_probability_difference': 0.1,
            'ks_warning_cutoff': 0.005,
            'solver_timeout_seconds': 900.0,
        },
        'validation': {
            'decoy_fraction': 0.5,
            'seed': None,
            'target_decoy_ratio': 1.0,
        },
        'output': {
            'format': 'tsv',
        },
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _config_from_args(args: argparse.Namespace) -> dict:
    return load_config(Path(args.config) if getattr(args, 'config', None) else None)


def build_matcher(config: dict) -> AmtDatabaseMatcher:
    """Matcher configured from the matching, alignment and probability sections."""
    params = MatchingParameters.from_config(config)
    probability_params = ProbabilityParameters.from_config(config)
    service = RegressionService(
        timeout_seconds=probability_params.solver_timeout_seconds,
        modal_min_points=params.modal_min_points,
    )
    return AmtDatabaseMatcher(params, probability_params, service)


def _build_mapper(config: dict, params: MatchingParameters) -> TimeHydrophobicityMapper:
    service = RegressionService(
        timeout_seconds=config['probability']['solver_timeout_seconds'],
        modal_min_points=params.modal_min_points,
    )
    return TimeHydrophobicityMapper(
        service=service,
        degree=params.degree,
        leverage_numerator=params.leverage_numerator,
        max_studentized_residual=params.max_studentized_residual,
        mass_match_delta=params.mass_match_delta,
        mass_match_delta_type=params.mass_match_delta_type,
    )


def _write_json(data: dict, path: Path) -> None:
    with open(path, 'w') as f:
        json.dump(data, f, indent=2, default=str)


def cmd_build(args: argparse.Namespace) -> int:
    """Build an AMT database from identified MS/MS feature tables."""
    config = _config_from_args(args)
    db_config = config['database']
    modifications = modifications_from_config(config['modifications'])
    params = MatchingParameters.from_config(config)
    mapper = _build_mapper(config, params)

    feature_sets = {Path(p).stem: load_features(Path(p)) for p in args.inputs}
    db = build_database_from_identifications(
        feature_sets, modifications,
        min_peptide_prophet=db_config['min_peptide_prophet'],
        mapper=mapper,
        ignore_unknown_modifications=db_config['ignore_unknown_modifications'],
    )
    if db_config['align_runs'] and db.num_runs > 1:
        db = align_all_runs_using_common_peptides(
            db, db_config['min_matched_peptides'], params.degree, mapper
        )
    remove_predicted_hydrophobicity_outliers(db, db_config['predicted_outlier_difference'])
    remove_hydrophobicity_outliers(db, db_config['outlier_std_multiple'])

    save_database(db, Path(args.output))
    logger.info(f"Built {db}")
    return 0


def cmd_align(args: argparse.Namespace) -> int:
    """Align all runs of a database onto a common hydrophobicity scale."""
    config = _config_from_args(args)
    params = MatchingParameters.from_config(config)
    mapper = _build_mapper(config, params)
    db = load_database(Path(args.database))
    aligned = align_all_runs_using_common_peptides(
        db, config['database']['min_matched_peptides'], params.degree, mapper
    )
    save_database(aligned, Path(args.output))
    logger.info(f"Aligned {aligned.num_runs} of {db.num_runs} runs -> {args.output}")
    return 0


def cmd_match(args: argparse.Namespace) -> int:
    """Match MS1 feature tables against a database."""
    config = _config_from_args(args)
    modifications = modifications_from_config(config['modifications'])
    matcher = build_matcher(config)
    db = load_database(Path(args.database))

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    suffix = '.' + config['output']['format'].lower()

    feature_sets = {Path(p).stem: load_features(Path(p)) for p in args.inputs}
    embedded = {}
    if args.embedded_ms2:
        if len(args.embedded_ms2) != len(args.inputs):
            logger.error("Provide one embedded MS2 table per input feature table")
            return 1
        embedded = {Path(p).stem: load_features(Path(m)) for p, m in zip(args.inputs, args.embedded_ms2)}

    batch = match_feature_sets(db, feature_sets, modifications, matcher, embedded)
    for name, result in batch.results.items():
        save_match_results(result, output_dir / f"{name}.amt{suffix}")
        if args.all_pairs:
            save_match_results(result, output_dir / f"{name}.pairs{suffix}", include_all_pairs=True)

    _write_json({
        'amt_match_version': __version__,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'database': str(args.database),
        'database_summary': db.summary(),
        'parameters': {**matcher.params.to_dict(), **matcher.probability_params.to_dict()},
        'runs': {name: result.summary() for name, result in batch.results.items()},
        'skipped': batch.skipped,
    }, output_dir / 'match_summary.json')

    if batch.skipped:
        logger.warning(f"Skipped {len(batch.skipped)} runs: {', '.join(batch.skipped)}")
    return 0 if batch.results else 1


def cmd_validate(args: argparse.Namespace) -> int:
    """Estimate matching FDR by turning part of the database into decoys."""
    config = _config_from_args(args)
    validation_config = config['validation']
    modifications = modifications_from_config(config['modifications'])
    db = load_database(Path(args.database))
    features = load_features(Path(args.input))
    embedded = load_features(Path(args.embedded_ms2)) if args.embedded_ms2 else None
    seed = args.seed if args.seed is not None else validation_config['seed']

    result = match_with_decoy_split(
        db, features, modifications,
        matcher=build_matcher(config),
        decoy_fraction=validation_config['decoy_fraction'],
        seed=seed,
        embedded_ms2=embedded,
        target_decoy_ratio=validation_config['target_decoy_ratio'],
    )
    output = Path(args.output)
    if output.suffix.lower() == '.parquet':
        result.table.to_parquet(output, index=False)
    else:
        result.table.to_csv(output, sep='\t', index=False, na_rep='NA')

    logger.info(f"Validation: {result.num_target_matches} target, {result.num_decoy_matches} decoy matches")
    for cutoff in (0.9, 0.5, 0.1):
        logger.info(f"  FDR at probability >= {cutoff}: {result.fdr_at_probability(cutoff):.3f}")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Export a database as a per-peptide TSV table."""
    db = load_database(Path(args.database))
    save_database_tsv(db, Path(args.output))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='amt',
        description='amt-match: Accurate Mass and Time peptide identification\n\n'
                    'Typical usage:\n'
                    '  amt build ms2_run1.tsv ms2_run2.tsv -o amt.parquet -c config.yaml\n'
                    '  amt match -d amt.parquet ms1_features.tsv -o results/ -c config.yaml',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    build_parser = subparsers.add_parser('build', help='Build a database from identified MS/MS features')
    build_parser.add_argument('inputs', nargs='+', help='Identified feature tables, one per run')
    build_parser.add_argument('-o', '--output', required=True, help='Output database parquet')
    build_parser.add_argument('-c', '--config', help='Configuration YAML')

    match_parser = subparsers.add_parser('match', help='Match MS1 features against a database')
    match_parser.add_argument('inputs', nargs='+', help='MS1 feature tables (TSV/CSV/parquet)')
    match_parser.add_argument('-d', '--database', required=True, help='Database parquet')
    match_parser.add_argument('-o', '--output-dir', required=True, help='Output directory')
    match_parser.add_argument('-c', '--config', help='Configuration YAML')
    match_parser.add_argument('--embedded-ms2', nargs='+',
                              help='Identified MS/MS tables, one per input, used to guide alignment')
    match_parser.add_argument('--all-pairs', action='store_true',
                              help='Also write every scored (feature, database feature) pair')

    val_parser = subparsers.add_parser('validate', help='Estimate FDR with a target/decoy database split')
    val_parser.add_argument('-i', '--input', required=True, help='MS1 feature table')
    val_parser.add_argument('-d', '--database', required=True, help='Database parquet')
    val_parser.add_argument('-o', '--output', required=True, help='Output rank table (.tsv or .parquet)')
    val_parser.add_argument('-c', '--config', help='Configuration YAML')
    val_parser.add_argument('--embedded-ms2', help='Identified MS/MS table used to guide alignment')
    val_parser.add_argument('--seed', type=int, help='Random seed for the decoy split')

    align_parser = subparsers.add_parser('align', help='Align database runs onto a common H scale')
    align_parser.add_argument('-d', '--database', required=True, help='Input database parquet')
    align_parser.add_argument('-o', '--output', required=True, help='Output database parquet')
    align_parser.add_argument('-c', '--config', help='Configuration YAML')

    export_parser = subparsers.add_parser('export', help='Export a database as TSV')
    export_parser.add_argument('-d', '--database', required=True, help='Database parquet')
    export_parser.add_argument('-o', '--output', required=True, help='Output TSV')

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    commands = {
        'build': cmd_build,
        'match': cmd_match,
        'validate': cmd_validate,
        'align': cmd_align,
        'export': cmd_export,
    }
    if args.command not in commands:
        parser.print_help()
        return 1
    try:
        return commands[args.command](args)
    except AmtError as e:
        logger.error(str(e))
        return 2


if __name__ == '__main__':
    sys.exit(main())
