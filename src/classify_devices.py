"""
Device Classification CLI

Config-driven keyword classifier for medical-device registry entries (GMDN terms).
Flags entries likely to be complex electromedical / capital equipment using a
4-tier waterfall over hand-curated pattern lists.

Usage:
    python src/classify_devices.py --config registries/gmdn/config.yaml
    python src/classify_devices.py --config registries/gmdn/config.yaml --input override.txt
    python src/classify_devices.py --config registries/gmdn/config.yaml --output-dir /tmp --workbook
"""

import sys
import math
import time
import argparse
import yaml
import pandas as pd
import numpy as np
from pathlib import Path
from collections import Counter


PATTERN_LISTS = ('exclusion', 'strong', 'medium', 'simplicity')
INPUT_FORMATS = ('lines', 'csv')
DEFAULT_SEPARATOR = ' - '

MATCH_KINDS = ['strong', 'medium', 'exclusion', 'simplicity', 'default']
KIND_LABELS = {
    'strong': 'Strong inclusion pattern',
    'medium': 'Medium-probability pattern',
    'exclusion': 'Exclusion pattern',
    'simplicity': 'Simplicity indicator (default exclude)',
    'default': 'No pattern (default exclude)',
}
REASON_TEMPLATES = {
    'exclusion': "Excluded: matches exclusion pattern '{}'",
    'strong': "Included: matches strong pattern '{}'",
    'medium': "Included: matches medium-probability pattern '{}'",
    'simplicity': "Excluded: simplicity indicator '{}' and no strong pattern",
    'default': "Excluded: no inclusion pattern matched",
}


class ConfigError(Exception):
    pass


def load_config(config_path: str, input_override: str = None, output_dir_override: str = None) -> dict:
    config_path = Path(config_path).resolve()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ConfigError(f"Config file must be a mapping, got {type(config).__name__}: {config_path}")

    base_dir = config_path.parent

    for section in ['registry', 'paths']:
        if section not in config:
            raise ConfigError(f"Missing required config section: '{section}'")
        if not isinstance(config[section], dict):
            raise ConfigError(f"Config section '{section}' must be a mapping")

    for section in ['input', 'report']:
        if config.get(section) is not None and not isinstance(config[section], dict):
            raise ConfigError(f"Config section '{section}' must be a mapping")

    if 'name' not in config['registry']:
        raise ConfigError("Missing required key: 'registry.name'")

    required_paths = ['input', 'patterns', 'output_dir', 'output_prefix']
    for key in required_paths:
        if key not in config['paths']:
            raise ConfigError(f"Missing required path: 'paths.{key}'")

    input_cfg = config.setdefault('input', {}) or {}
    config['input'] = input_cfg
    input_cfg.setdefault('format', 'lines')
    input_cfg.setdefault('separator', DEFAULT_SEPARATOR)
    input_cfg.setdefault('encoding', 'utf-8')
    if input_cfg['format'] not in INPUT_FORMATS:
        raise ConfigError(
            f"Unknown input format '{input_cfg['format']}' (expected one of: {', '.join(INPUT_FORMATS)})"
        )
    if input_cfg['format'] == 'csv' and not input_cfg.get('column'):
        raise ConfigError("Input format 'csv' requires 'input.column'")
    if not input_cfg['separator']:
        raise ConfigError("'input.separator' must not be empty")

    report_cfg = config.setdefault('report', {}) or {}
    config['report'] = report_cfg
    report_cfg.setdefault('sample_size', 10)
    sample_size = report_cfg['sample_size']
    if isinstance(sample_size, bool) or not isinstance(sample_size, int) or sample_size < 0:
        raise ConfigError(f"'report.sample_size' must be a non-negative integer, got {sample_size!r}")

    resolved = {}
    for key in ['input', 'patterns']:
        resolved[key] = (base_dir / config['paths'][key]).resolve()
    resolved['output_dir'] = (base_dir / config['paths']['output_dir']).resolve()
    resolved['output_prefix'] = config['paths']['output_prefix']

    if input_override:
        resolved['input'] = Path(input_override).resolve()
    if output_dir_override:
        resolved['output_dir'] = Path(output_dir_override).resolve()

    config['_resolved_paths'] = resolved

    for key in ['input', 'patterns']:
        if not resolved[key].exists():
            raise ConfigError(f"File not found: {resolved[key]} (from paths.{key})")

    return config


def load_patterns(path: Path) -> dict[str, list[str]]:
    """Load the four ordered pattern lists, lower-cased for case-insensitive matching."""
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Pattern file must be a mapping of lists, got {type(data).__name__}: {path}")

    patterns = {}
    for name in PATTERN_LISTS:
        if name not in data:
            raise ConfigError(f"Pattern file missing required list: '{name}'")
        items = data[name] or []
        if not isinstance(items, list):
            raise ConfigError(f"Pattern list '{name}' must be a list, got {type(items).__name__}")
        cleaned = []
        for i, item in enumerate(items):
            if not isinstance(item, str) or not item.strip():
                raise ConfigError(f"{name}[{i}] must be a non-empty string, got {item!r}")
            cleaned.append(item.strip().lower())
        patterns[name] = cleaned
    return patterns


def pattern_warnings(patterns: dict[str, list[str]]) -> list[str]:
    warnings = []
    for name in PATTERN_LISTS:
        dupes = [p for p, c in Counter(patterns[name]).items() if c > 1]
        for p in dupes:
            warnings.append(f"Duplicate pattern in '{name}': '{p}'")
    exclusion = set(patterns['exclusion'])
    for name in ('strong', 'medium'):
        for p in patterns[name]:
            if p in exclusion:
                warnings.append(f"Pattern '{p}' is in both 'exclusion' and '{name}' (exclusion wins)")
    return warnings


def read_lines(path: Path, input_cfg: dict) -> list[str]:
    """Read raw entry strings; blank lines are dropped."""
    if input_cfg['format'] == 'csv':
        column = input_cfg['column']
        df = pd.read_csv(path, dtype=str, keep_default_na=False, encoding=input_cfg['encoding'])
        if column not in df.columns:
            raise ConfigError(f"Column '{column}' (from input.column) not found in input CSV")
        raw = df[column].tolist()
    else:
        with open(path, 'r', encoding=input_cfg['encoding']) as f:
            raw = f.read().splitlines()
    return [line.strip() for line in raw if line.strip()]


def parse_line(line: str, separator: str = DEFAULT_SEPARATOR) -> tuple[str, str]:
    code, sep, description = line.partition(separator)
    if not sep:
        return '', line.strip()
    return code.strip(), description.strip()


def load_entries(path: Path, input_cfg: dict) -> pd.DataFrame:
    separator = input_cfg['separator']
    records = [parse_line(line, separator) for line in read_lines(path, input_cfg)]
    return pd.DataFrame(records, columns=['code', 'description'], dtype=object)


def _first_match(text: str, candidates: list[str]) -> str | None:
    for p in candidates:
        if p in text:
            return p
    return None


def match_description(description: str, patterns: dict[str, list[str]]) -> tuple[str, str]:
    """Return (match_kind, matched_pattern) for a single description."""
    text = '' if pd.isna(description) else str(description).lower()

    hit = _first_match(text, patterns['exclusion'])
    if hit is not None:
        return 'exclusion', hit

    hit = _first_match(text, patterns['strong'])
    if hit is not None:
        return 'strong', hit

    simple = _first_match(text, patterns['simplicity'])
    if simple is None:
        hit = _first_match(text, patterns['medium'])
        if hit is not None:
            return 'medium', hit
        return 'default', ''
    return 'simplicity', simple


def classify_description(description: str, patterns: dict[str, list[str]]) -> tuple[bool, str]:
    kind, pattern = match_description(description, patterns)
    return kind in ('strong', 'medium'), REASON_TEMPLATES[kind].format(pattern)


def classify_entries(entries: pd.DataFrame, patterns: dict[str, list[str]], verbose: bool = False) -> pd.DataFrame:
    """Vectorized waterfall over the entries table. Agrees row-for-row with classify_description."""
    text = entries['description'].fillna('').astype(str).str.lower()

    match_kind = pd.Series('', index=entries.index, dtype='object')
    matched = pd.Series('', index=entries.index, dtype='object')
    undecided = pd.Series(True, index=entries.index)

    def assign(kind, candidates, eligible):
        count = 0
        for p in candidates:
            if not eligible.any():
                break
            idx = eligible[eligible].index
            hit = text.loc[idx].str.contains(p, regex=False, na=False)
            hit_idx = idx[hit.values]
            if len(hit_idx) > 0:
                match_kind[hit_idx] = kind
                matched[hit_idx] = p
                undecided[hit_idx] = False
                eligible[hit_idx] = False
                count += len(hit_idx)
        return count

    # Tier 1: Exclusion
    n = assign('exclusion', patterns['exclusion'], undecided.copy())
    if verbose:
        print(f"  Tier 1 (exclusion patterns): {n:,} rows")

    # Tier 2: Strong inclusion
    n = assign('strong', patterns['strong'], undecided.copy())
    if verbose:
        print(f"  Tier 2 (strong patterns): {n:,} rows")

    # Tier 3: Medium inclusion, only for rows without a simplicity indicator
    simple_word = pd.Series('', index=entries.index, dtype='object')
    for w in patterns['simplicity']:
        fresh = (simple_word == '') & text.str.contains(w, regex=False, na=False)
        simple_word[fresh] = w
    n = assign('medium', patterns['medium'], undecided & (simple_word == ''))
    if verbose:
        print(f"  Tier 3 (medium patterns): {n:,} rows")

    # Tier 4: Default exclusion
    simple_mask = undecided & (simple_word != '')
    match_kind[simple_mask] = 'simplicity'
    matched[simple_mask] = simple_word[simple_mask]
    default_mask = undecided & (simple_word == '')
    match_kind[default_mask] = 'default'
    if verbose:
        print(f"  Tier 4 (default exclude): {undecided.sum():,} rows "
              f"({simple_mask.sum():,} with simplicity indicator)")

    included = match_kind.isin(['strong', 'medium'])
    reason = pd.Series(
        [REASON_TEMPLATES[k].format(p) for k, p in zip(match_kind, matched)],
        index=entries.index, dtype='object',
    )

    results = entries.copy()
    results['included'] = included
    results['decision'] = np.where(included, 'Included', 'Excluded')
    results['match_kind'] = match_kind
    results['matched_pattern'] = matched
    results['reason'] = reason
    return results


def code_sort_key(code: str) -> tuple:
    """Numeric codes first in numeric order, then everything else as strings."""
    try:
        value = float(code)
    except (TypeError, ValueError):
        value = None
    if value is None or not math.isfinite(value):
        return (1, 0.0, str(code))
    return (0, value, '')


def sort_by_code(df: pd.DataFrame) -> pd.DataFrame:
    keys = [code_sort_key(c) for c in df['code']]
    order = sorted(range(len(keys)), key=lambda i: keys[i])
    return df.iloc[order]


def partition(results: pd.DataFrame) -> tuple[pd.DataFrame, pd.DataFrame]:
    included = sort_by_code(results[results['included']])
    excluded = results[~results['included']]
    return included, excluded


def build_summary(results: pd.DataFrame, included: pd.DataFrame, registry_name: str,
                  input_name: str, sample_size: int) -> str:
    total = len(results)
    n_incl = len(included)
    n_excl = total - n_incl
    kind_counts = results['match_kind'].value_counts().to_dict()

    lines = [
        f"{registry_name} DEVICE CLASSIFICATION SUMMARY",
        "=" * 70,
        f"Input file:           {input_name}",
        f"Total entries:        {total:,}",
        f"Included:             {n_incl:,} ({n_incl/total*100:.1f}%)",
        f"Excluded:             {n_excl:,} ({n_excl/total*100:.1f}%)",
        "",
        "Classification Categories:",
    ]
    for kind in MATCH_KINDS:
        c = kind_counts.get(kind, 0)
        lines.append(f"  {KIND_LABELS[kind]:40s} {c:>8,} ({c/total*100:.1f}%)")

    pattern_counts = Counter(
        (k, p) for k, p in zip(results['match_kind'], results['matched_pattern']) if p
    )
    if pattern_counts:
        lines += ["", "Top Matched Patterns:"]
        ranked = sorted(pattern_counts.items(), key=lambda kv: (-kv[1], kv[0][0], kv[0][1]))
        for (kind, p), c in ranked[:10]:
            lines.append(f"  {kind:12s} {p:38s} {c:>8,}")

    lines += ["", f"Sample of Included Entries (first {min(sample_size, n_incl)} of {n_incl:,}):"]
    if n_incl == 0:
        lines.append("  (none)")
    for code, desc, kind in zip(included['code'].head(sample_size),
                                included['description'].head(sample_size),
                                included['match_kind'].head(sample_size)):
        lines.append(f"  {code or '-':>8s}  {desc}  [{kind}]")

    return "\n".join(lines) + "\n"


def write_workbook(path: Path, results: pd.DataFrame, included: pd.DataFrame,
                   excluded: pd.DataFrame, summary_text: str):
    columns = ['code', 'description', 'decision', 'match_kind', 'matched_pattern', 'reason']
    with pd.ExcelWriter(path, engine='openpyxl') as writer:
        results[columns].to_excel(writer, sheet_name='All Results', index=False)
        included[columns].to_excel(writer, sheet_name='Included', index=False)
        excluded[columns].to_excel(writer, sheet_name='Excluded', index=False)
        pd.DataFrame({'Summary': summary_text.splitlines()}).to_excel(
            writer, sheet_name='Summary', index=False
        )


def main(config: dict, workbook: bool = False) -> dict:
    paths = config['_resolved_paths']
    input_cfg = config['input']
    registry_name = config['registry']['name']
    sample_size = config['report']['sample_size']

    paths['output_dir'].mkdir(parents=True, exist_ok=True)
    output_csv = paths['output_dir'] / f"{paths['output_prefix']}.csv"
    output_summary = paths['output_dir'] / f"{paths['output_prefix']}_summary.txt"
    output_xlsx = paths['output_dir'] / f"{paths['output_prefix']}.xlsx"

    t_start = time.perf_counter()

    print("=" * 70)
    print(f"{registry_name} DEVICE CLASSIFICATION")
    print("=" * 70)

    print("\nLoading patterns...")
    patterns = load_patterns(paths['patterns'])
    for name in PATTERN_LISTS:
        print(f"  {name.capitalize()} patterns: {len(patterns[name])}")
    warnings = pattern_warnings(patterns)
    if warnings:
        print(f"\n  WARNING: {len(warnings)} pattern issues:")
        for w in warnings[:10]:
            print(f"    {w}")

    print(f"\nLoading {registry_name} entries...")
    entries = load_entries(paths['input'], input_cfg)
    total_rows = len(entries)
    if total_rows == 0:
        raise ConfigError(f"Input has 0 entries: {paths['input']}")
    no_code = int((entries['code'] == '').sum())
    print(f"  Loaded {total_rows:,} entries ({no_code:,} without a code)")

    print("\nClassifying entries...")
    t_classify = time.perf_counter()
    results = classify_entries(entries, patterns, verbose=True)
    t_classify_end = time.perf_counter()
    print(f"  Classification completed in {t_classify_end - t_classify:.1f}s")

    included, excluded = partition(results)

    included[['code', 'description', 'reason']].to_csv(
        output_csv, index=False, encoding='utf-8', lineterminator='\n'
    )
    summary_text = build_summary(results, included, registry_name, paths['input'].name, sample_size)
    with open(output_summary, 'w', encoding='utf-8', newline='\n') as f:
        f.write(summary_text)

    if workbook:
        print(f"\nBuilding review workbook ({total_rows:,} rows)...")
        write_workbook(output_xlsx, results, included, excluded, summary_text)

    t_end = time.perf_counter()

    kind_counts = results['match_kind'].value_counts().to_dict()
    print(f"\n{'='*70}")
    print("CLASSIFICATION COMPLETE")
    print(f"{'='*70}")
    print(f"Total entries:        {total_rows:,}")
    print(f"Included:             {len(included):,} ({len(included)/total_rows*100:.1f}%)")
    print(f"Excluded:             {len(excluded):,} ({len(excluded)/total_rows*100:.1f}%)")
    print(f"\nMatch Kinds:")
    for kind in MATCH_KINDS:
        count = kind_counts.get(kind, 0)
        if count > 0:
            print(f"  {kind:30s} {count:>8,} ({count/total_rows*100:.1f}%)")
    print(f"\nTiming: classification {t_classify_end - t_classify:.1f}s, total {t_end - t_start:.1f}s")
    print(f"Included list saved to: {output_csv}")
    print(f"Summary saved to: {output_summary}")
    if workbook:
        print(f"Workbook saved to: {output_xlsx}")

    return {
        'csv': output_csv,
        'summary': output_summary,
        'workbook': output_xlsx if workbook else None,
    }


def cli(argv=None):
    parser = argparse.ArgumentParser(
        description='Device Classification CLI: flag complex medical devices in registry term lists'
    )
    parser.add_argument('--config', required=True, help='Path to registry config YAML')
    parser.add_argument('--input', default=None, help='Override input file path from config')
    parser.add_argument('--output-dir', default=None, help='Override output directory from config')
    parser.add_argument('--workbook', action='store_true', help='Also write an xlsx review workbook')
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config, args.input, args.output_dir)
        main(config, workbook=args.workbook)
    except ConfigError as e:
        print(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    sys.stdout.reconfigure(encoding='utf-8')
    cli()
