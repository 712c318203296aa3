"""
Configuration file support for the housekeeper CLI.

Supports YAML and JSON config files with CLI argument override. A full
config mirrors the ``run`` command:

    counts: counts.csv
    design: design.csv
    reference_genes: reference_genes.csv
    output: results/
    gene_sets: hallmark.gmt
    factors:
      condition: Low
      treatment: Vehicle
    fit:
      n_jobs: 4
      ridge: 0.001
    contrast:
      alpha: 0.05
      coefficient: conditionHigh.treatmentInhibitor
    enrichment:
      use_ranks: true
      inter_gene_correlation: 0.01

Precedence (highest first): explicit CLI arguments, config values, CLI
defaults.
"""

import json
from argparse import Namespace
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from housekeeper.stats.contrasts import ContrastEngine
from housekeeper.stats.enrichment import RankEnrichmentTester
from housekeeper.stats.glm import NegativeBinomialModelFitter
from housekeeper.stats.reference_genes import ReferenceGeneSelector
from housekeeper.stats.size_factors import SizeFactorEstimator


@dataclass
class ReferenceConfig:
    """Reference gene selection configuration."""
    min_expression: float = 10.0
    exclude_pattern: Optional[str] = r"^ERCC-"
    quantile: float = 0.02
    id_col: Optional[str] = None
    symbol_col: Optional[str] = None
    condition_a_cols: List[str] = field(default_factory=list)
    condition_b_cols: List[str] = field(default_factory=list)

    def build(self) -> ReferenceGeneSelector:
        return ReferenceGeneSelector(
            min_expression=self.min_expression,
            exclude_pattern=self.exclude_pattern,
            quantile=self.quantile,
        )


@dataclass
class FitConfig:
    """Size factor and NB GLM fitting configuration."""
    min_total: int = 3
    min_reference_genes: int = 10
    max_iter: int = 50
    tol: float = 1e-6
    ridge: float = 1e-3
    min_mu: float = 0.5
    min_disp: float = 1e-8
    max_disp: Optional[float] = None
    outlier_sd: float = 2.0
    trend_kind: str = "parametric"
    n_jobs: int = 1

    def build_estimator(self) -> SizeFactorEstimator:
        return SizeFactorEstimator(min_total=self.min_total, min_genes=self.min_reference_genes)

    def build(self) -> NegativeBinomialModelFitter:
        return NegativeBinomialModelFitter(
            max_iter=self.max_iter,
            tol=self.tol,
            ridge=self.ridge,
            min_mu=self.min_mu,
            min_disp=self.min_disp,
            max_disp=self.max_disp,
            outlier_sd=self.outlier_sd,
            trend_kind=self.trend_kind,
            n_jobs=self.n_jobs,
        )


@dataclass
class ContrastConfig:
    """Contrast testing configuration."""
    alpha: float = 0.05
    independent_filtering: bool = True
    n_quantiles: int = 50
    upper_quantile: float = 0.95
    coefficient: Optional[str] = None
    weights: Optional[Dict[str, float]] = None
    name: Optional[str] = None

    def build(self) -> ContrastEngine:
        return ContrastEngine(
            alpha=self.alpha,
            independent_filtering=self.independent_filtering,
            n_quantiles=self.n_quantiles,
            upper_quantile=self.upper_quantile,
        )


@dataclass
class EnrichmentConfig:
    """Rank enrichment configuration."""
    use_ranks: bool = True
    inter_gene_correlation: float = 0.01
    min_size: int = 2
    allow_neg_cor: bool = False
    stat_col: str = "stat"

    def build(self) -> RankEnrichmentTester:
        return RankEnrichmentTester(
            use_ranks=self.use_ranks,
            inter_gene_correlation=self.inter_gene_correlation,
            min_size=self.min_size,
            allow_neg_cor=self.allow_neg_cor,
        )


@dataclass
class PipelineConfig:
    """
    Complete configuration schema for the housekeeper workflow.

    Mirrors the CLI argument structure for consistency.
    """
    counts: Optional[Path] = None
    design: Optional[Path] = None
    reference_genes: Optional[Path] = None
    expression: Optional[Path] = None
    gene_sets: Optional[Path] = None
    results: Optional[Path] = None
    output: Optional[Path] = None
    factors: Dict[str, str] = field(default_factory=dict)
    interaction: bool = True
    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    fit: FitConfig = field(default_factory=FitConfig)
    contrast: ContrastConfig = field(default_factory=ContrastConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "PipelineConfig":
        """
        Build a typed config from a loaded mapping.

        Raises:
            ValueError: On unknown keys.
        """
        sections = {
            'reference': ReferenceConfig,
            'fit': FitConfig,
            'contrast': ContrastConfig,
            'enrichment': EnrichmentConfig,
        }
        path_keys = ('counts', 'design', 'reference_genes', 'expression', 'gene_sets', 'results', 'output')
        known = set(sections) | set(path_keys) | {'factors', 'interaction'}
        unknown = sorted(set(config) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}. Known: {sorted(known)}")

        kwargs: Dict[str, Any] = {}
        for key in path_keys:
            if config.get(key) is not None:
                kwargs[key] = Path(config[key])
        if 'factors' in config:
            if not isinstance(config['factors'], dict):
                raise ValueError("'factors' must map factor name -> reference level")
            kwargs['factors'] = {str(k): str(v) for k, v in config['factors'].items()}
        if 'interaction' in config:
            kwargs['interaction'] = bool(config['interaction'])

        for name, section_cls in sections.items():
            values = config.get(name) or {}
            if not isinstance(values, dict):
                raise ValueError(f"Config section '{name}' must be a mapping")
            allowed = {f.name for f in fields(section_cls)}
            bad = sorted(set(values) - allowed)
            if bad:
                raise ValueError(f"Unknown keys in '{name}': {bad}. Known: {sorted(allowed)}")
            kwargs[name] = section_cls(**values)

        return cls(**kwargs)


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid

    Examples:
        >>> config = load_config(Path("run.yaml"))
        >>> print(config['contrast']['alpha'])
        0.05
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()
    if suffix not in ('.yaml', '.yml', '.json'):
        raise ValueError(f"Unsupported config format: {suffix}. Use .yaml, .yml, or .json")

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            else:
                config = json.load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}") from e

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return config


def _check_range(section: str, key: str, value: Any, low: float, high: float,
                 low_open: bool = True, high_open: bool = True) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{section}.{key} must be a number, got: {value!r}")
    above = value > low if low_open else value >= low
    below = value < high if high_open else value <= high
    if not (above and below):
        lb = '(' if low_open else '['
        rb = ')' if high_open else ']'
        raise ValueError(f"{section}.{key} must be in {lb}{low}, {high}{rb}, got: {value}")


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration structure and values.

    Parameters:
        config: Configuration dictionary

    Raises:
        ValueError: If configuration is invalid
    """
    parsed = PipelineConfig.from_dict(config)

    ref = parsed.reference
    _check_range('reference', 'quantile', ref.quantile, 0, 1, high_open=False)
    _check_range('reference', 'min_expression', ref.min_expression, 0, float('inf'), low_open=False)

    fit = parsed.fit
    _check_range('fit', 'min_total', fit.min_total, 0, float('inf'), low_open=False)
    _check_range('fit', 'min_reference_genes', fit.min_reference_genes, 1, float('inf'), low_open=False)
    _check_range('fit', 'max_iter', fit.max_iter, 1, float('inf'), low_open=False)
    _check_range('fit', 'tol', fit.tol, 0, 1)
    _check_range('fit', 'ridge', fit.ridge, 0, float('inf'), low_open=False)
    _check_range('fit', 'min_mu', fit.min_mu, 0, float('inf'))
    _check_range('fit', 'min_disp', fit.min_disp, 0, float('inf'))
    _check_range('fit', 'max_disp', fit.max_disp, fit.min_disp, float('inf'))
    _check_range('fit', 'outlier_sd', fit.outlier_sd, 0, float('inf'))
    if fit.trend_kind not in ('parametric', 'mean'):
        raise ValueError(f"Invalid trend kind '{fit.trend_kind}'. Choose from: parametric, mean")
    if not isinstance(fit.n_jobs, int) or (fit.n_jobs < 1 and fit.n_jobs != -1):
        raise ValueError(f"fit.n_jobs must be a positive integer or -1, got: {fit.n_jobs}")

    con = parsed.contrast
    _check_range('contrast', 'alpha', con.alpha, 0, 1)
    _check_range('contrast', 'upper_quantile', con.upper_quantile, 0, 1, high_open=False)
    _check_range('contrast', 'n_quantiles', con.n_quantiles, 2, float('inf'), low_open=False)
    if con.coefficient is not None and con.weights is not None:
        raise ValueError("Set either contrast.coefficient or contrast.weights, not both")

    enr = parsed.enrichment
    _check_range('enrichment', 'inter_gene_correlation', enr.inter_gene_correlation, -1, 1)
    _check_range('enrichment', 'min_size', enr.min_size, 1, float('inf'), low_open=False)


def _merge_value(cli_value: Any, config_value: Any, was_explicitly_set: bool) -> Any:
    """
    Merge a single config value with CLI argument.

    Rules:
    - CLI args ALWAYS override config if explicitly set
    - If CLI arg not set, use config value
    - If neither set, keep CLI default
    """
    if was_explicitly_set:
        return cli_value
    if config_value is not None:
        return config_value
    return cli_value


# (section or None for top level, config key) -> argparse dest
_ARG_MAP = {
    (None, 'counts'): 'counts',
    (None, 'design'): 'design',
    (None, 'reference_genes'): 'reference_genes',
    (None, 'expression'): 'expression',
    (None, 'gene_sets'): 'gene_sets',
    (None, 'output'): 'output',
    (None, 'interaction'): 'interaction',
    (None, 'results'): 'results',
    ('reference', 'min_expression'): 'min_expression',
    ('reference', 'exclude_pattern'): 'exclude_pattern',
    ('reference', 'quantile'): 'quantile',
    ('reference', 'id_col'): 'id_col',
    ('reference', 'symbol_col'): 'symbol_col',
    ('reference', 'condition_a_cols'): 'condition_a_cols',
    ('reference', 'condition_b_cols'): 'condition_b_cols',
    ('fit', 'min_total'): 'min_total',
    ('fit', 'min_reference_genes'): 'min_reference_genes',
    ('fit', 'max_iter'): 'max_iter',
    ('fit', 'tol'): 'tol',
    ('fit', 'ridge'): 'ridge',
    ('fit', 'min_mu'): 'min_mu',
    ('fit', 'min_disp'): 'min_disp',
    ('fit', 'max_disp'): 'max_disp',
    ('fit', 'outlier_sd'): 'outlier_sd',
    ('fit', 'trend_kind'): 'trend_kind',
    ('fit', 'n_jobs'): 'n_jobs',
    ('contrast', 'alpha'): 'alpha',
    ('contrast', 'independent_filtering'): 'independent_filtering',
    ('contrast', 'n_quantiles'): 'n_quantiles',
    ('contrast', 'upper_quantile'): 'upper_quantile',
    ('contrast', 'coefficient'): 'coefficient',
    ('contrast', 'name'): 'contrast_name',
    ('enrichment', 'use_ranks'): 'use_ranks',
    ('enrichment', 'inter_gene_correlation'): 'inter_gene_cor',
    ('enrichment', 'min_size'): 'min_set_size',
    ('enrichment', 'allow_neg_cor'): 'allow_neg_cor',
    ('enrichment', 'stat_col'): 'stat_col',
}

_PATH_ARGS = {'counts', 'design', 'reference_genes', 'expression', 'gene_sets', 'output', 'results'}

# flags whose presence sets a dest with a different name
_FLAG_DESTS = {
    'no_filtering': 'independent_filtering',
    'no_ranks': 'use_ranks',
    'no_interaction': 'interaction',
}


def _explicit_args(cli_args: Optional[List[str]]) -> set:
    explicit = set()
    for arg in cli_args or []:
        if arg.startswith('--'):
            name = arg[2:].split('=', 1)[0].replace('-', '_')
            explicit.add(_FLAG_DESTS.get(name, name))
        elif arg.startswith('-') and len(arg) == 2:
            short_to_long = {'o': 'output', 'c': 'config'}
            if arg[1] in short_to_long:
                explicit.add(short_to_long[arg[1]])
    return explicit


def merge_config_with_args(config: Dict[str, Any], args: Namespace, cli_args: Optional[List[str]] = None) -> Namespace:
    """
    Merge config file values with CLI arguments.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments
    2. Config file values
    3. CLI argument defaults

    Only destinations the parsed command defines are touched, so one config
    file can serve every subcommand.

    Parameters:
        config: Configuration dictionary from load_config()
        args: Parsed CLI arguments (argparse.Namespace)
        cli_args: Raw CLI arguments list (for detecting explicit values).
                  If None, assumes all args are defaults

    Returns:
        Updated Namespace with merged values

    Examples:
        >>> config = load_config(Path("run.yaml"))
        >>> args = parser.parse_args(["run", "--alpha", "0.1"])
        >>> merged = merge_config_with_args(config, args, ["--alpha", "0.1"])
        >>> # merged.alpha from CLI, merged.n_jobs from config
    """
    explicit = _explicit_args(cli_args)
    merged = Namespace(**vars(args))

    for (section, key), dest in _ARG_MAP.items():
        if not hasattr(merged, dest):
            continue
        source = config if section is None else (config.get(section) or {})
        if key not in source:
            continue
        value = source[key]
        if value is not None and dest in _PATH_ARGS:
            value = Path(value)
        setattr(merged, dest, _merge_value(getattr(merged, dest), value, dest in explicit))

    if hasattr(merged, 'factor') and config.get('factors'):
        factors = [f"{name}:{ref}" for name, ref in config['factors'].items()]
        merged.factor = _merge_value(merged.factor, factors, 'factor' in explicit)

    contrast = config.get('contrast') or {}
    if hasattr(merged, 'contrast') and contrast.get('weights'):
        weights = ",".join(f"{k}={v}" for k, v in contrast['weights'].items())
        merged.contrast = _merge_value(merged.contrast, weights, 'contrast' in explicit)

    # an explicit choice of one contrast form drops the other from the config
    if 'coefficient' in explicit and hasattr(merged, 'contrast'):
        merged.contrast = args.contrast
    if 'contrast' in explicit and hasattr(merged, 'coefficient'):
        merged.coefficient = args.coefficient

    return merged


def apply_config(args: Namespace) -> Namespace:
    """
    Load ``args.config`` (if set), validate it and merge it into ``args``.

    The raw argument list is read from ``args.argv`` when the dispatcher
    recorded it, so explicit CLI values keep precedence.

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config is malformed or out of range
    """
    if not getattr(args, 'config', None):
        return args
    config = load_config(args.config)
    validate_config(config)
    return merge_config_with_args(config, args, getattr(args, 'argv', None))
