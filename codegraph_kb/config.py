"""
Configuration: loads settings from .codegraph_kb.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "store_dir": ".codegraph_kb/store",
    "log_dir": ".codegraph_kb/logs",
    "max_workers": 4,
    "include_tests": False,
    "test_path_patterns": [
        "tests/*", "test/*", "*/tests/*", "*/test/*",
        "__tests__/*", "*/__tests__/*", "spec/*", "*/spec/*",
        "test_*.py", "*_test.py", "conftest.py",
        "*_test.go",
        "*.test.js", "*.test.ts", "*.test.jsx", "*.test.tsx",
        "*.spec.js", "*.spec.ts", "*.spec.jsx", "*.spec.tsx",
        "*Test.java", "*Tests.java", "*Test.cs", "*Tests.cs",
        "*_spec.rb", "*_test.rb", "*Test.php",
    ],
    "keep_generations": 3,
    "cochange_enabled": True,
    "cochange_max_commits": 500,
    "cochange_max_files_per_commit": 50,
    "cochange_timeout": 30.0,
    "clustering": {
        "min_size": 3,
        "max_size": 20,
        "min_tokens": 500,
        "max_tokens": 4000,
        "min_cohesion": 0.80,
        "seed": 42,
        "resolution": 1.0,
        "refine_passes": 3,
        "mdl_lambda": 0.05,
        "min_text_similarity": 0.34,
        "max_token_df": 50,
        "weights": {
            "dependency": 1.0,
            "dataflow": 0.8,
            "cochange": 0.6,
            "textual": 0.4,
        },
    },
    "context": {
        "relevance_cutoff": 0.05,
        "dependency_weight": 0.7,
        "cochange_weight": 0.3,
        "max_candidate_hops": 2,
    },
}

# Config file search locations
_CONFIG_FILENAMES = [".codegraph_kb.yaml", ".codegraph_kb.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


def _section(yd: dict, key: str) -> dict:
    """Merge a nested YAML section over its defaults (one level deep)."""
    merged = dict(_DEFAULTS[key])
    raw = yd.get(key)
    if isinstance(raw, dict):
        for k, v in raw.items():
            if isinstance(merged.get(k), dict) and isinstance(v, dict):
                merged[k] = {**merged[k], **v}
            elif v is not None:
                merged[k] = v
    return merged


class Config:
    """Application configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables (``CODEGRAPH_KB_*``)
    3. .codegraph_kb.yaml config file
    4. Built-in defaults

    Instances are passed explicitly to every component; there is no
    module-level config object.
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(f"CODEGRAPH_KB_{env_key}")
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        def _get_bool(env_key: str, yaml_key: str, default: bool) -> bool:
            env_val = os.getenv(f"CODEGRAPH_KB_{env_key}")
            if env_val is not None:
                return env_val.lower() in ("1", "true", "yes")
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return bool(yaml_val)
            return default

        self.STORE_DIR = _get("STORE_DIR", "store_dir", _DEFAULTS["store_dir"])
        self.LOG_DIR = _get("LOG_DIR", "log_dir", _DEFAULTS["log_dir"])
        self.MAX_WORKERS = _get("MAX_WORKERS", "max_workers",
                                _DEFAULTS["max_workers"], cast=int)
        self.INCLUDE_TESTS = _get_bool("INCLUDE_TESTS", "include_tests",
                                       _DEFAULTS["include_tests"])
        self.KEEP_GENERATIONS = _get("KEEP_GENERATIONS", "keep_generations",
                                     _DEFAULTS["keep_generations"], cast=int)

        patterns = yd.get("test_path_patterns", _DEFAULTS["test_path_patterns"])
        self.TEST_PATH_PATTERNS: list[str] = (
            [str(p) for p in patterns] if isinstance(patterns, list)
            else list(_DEFAULTS["test_path_patterns"])
        )

        # Co-change mining
        self.COCHANGE_ENABLED = _get_bool("COCHANGE_ENABLED", "cochange_enabled",
                                          _DEFAULTS["cochange_enabled"])
        self.COCHANGE_MAX_COMMITS = _get("COCHANGE_MAX_COMMITS", "cochange_max_commits",
                                         _DEFAULTS["cochange_max_commits"], cast=int)
        self.COCHANGE_MAX_FILES_PER_COMMIT = _get(
            "COCHANGE_MAX_FILES_PER_COMMIT", "cochange_max_files_per_commit",
            _DEFAULTS["cochange_max_files_per_commit"], cast=int)
        self.COCHANGE_TIMEOUT = _get("COCHANGE_TIMEOUT", "cochange_timeout",
                                     _DEFAULTS["cochange_timeout"], cast=float)

        # Clustering
        cl = _section(yd, "clustering")
        self.CLUSTER_MIN_SIZE = int(cl["min_size"])
        self.CLUSTER_MAX_SIZE = int(cl["max_size"])
        self.CLUSTER_MIN_TOKENS = int(cl["min_tokens"])
        self.CLUSTER_MAX_TOKENS = int(cl["max_tokens"])
        self.CLUSTER_MIN_COHESION = float(
            os.getenv("CODEGRAPH_KB_MIN_COHESION", cl["min_cohesion"]))
        self.CLUSTER_SEED = int(cl["seed"])
        self.CLUSTER_RESOLUTION = float(cl["resolution"])
        self.CLUSTER_REFINE_PASSES = int(cl["refine_passes"])
        self.CLUSTER_MDL_LAMBDA = float(cl["mdl_lambda"])
        self.CLUSTER_MIN_TEXT_SIMILARITY = float(cl["min_text_similarity"])
        self.CLUSTER_MAX_TOKEN_DF = int(cl["max_token_df"])
        self.SIGNAL_WEIGHTS: dict[str, float] = {
            k: float(v) for k, v in cl["weights"].items()
        }

        # Context selection
        cx = _section(yd, "context")
        self.CONTEXT_RELEVANCE_CUTOFF = float(cx["relevance_cutoff"])
        self.CONTEXT_DEPENDENCY_WEIGHT = float(cx["dependency_weight"])
        self.CONTEXT_COCHANGE_WEIGHT = float(cx["cochange_weight"])
        self.CONTEXT_MAX_CANDIDATE_HOPS = int(cx["max_candidate_hops"])

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
