"""
Run Configuration Loader

Builds the options of a verifier run. Precedence (lowest first):
environment settings, an optional YAML run file, then CLI flags.

Example run file:

    include: ["*.md", "*.sql"]
    exclude: ["drafts/*"]
    workers: 2
    isolation_mode: transaction
    document_timeout: 120
    volatile_functions: [txid_current]
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from refcheck.config import Settings, settings as default_settings
from refcheck.core.errors import ConfigError
from refcheck.core.extractor import DEFAULT_INCLUDE

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,39}$")


class RunOptions(BaseModel):
    """Effective options for one run."""

    include: List[str] = Field(
        default_factory=lambda: list(DEFAULT_INCLUDE),
        description="Document filename patterns",
    )
    exclude: List[str] = Field(
        default_factory=list, description="Relative-path patterns to skip"
    )
    workers: Optional[int] = Field(
        None, ge=1, description="Parallel documents (default: pool max size)"
    )
    isolation_mode: Literal["transaction", "schema"] = Field(
        "transaction", description="Per-document isolation strategy"
    )
    statement_timeout: float = Field(30.0, gt=0, description="Seconds per statement")
    document_timeout: Optional[float] = Field(
        300.0, gt=0, description="Seconds per document"
    )
    run_timeout: Optional[float] = Field(1800.0, gt=0, description="Seconds per run")
    float_tolerance: float = Field(1e-9, ge=0, description="Approximate-number tolerance")
    volatile_functions: List[str] = Field(
        default_factory=list,
        description="Extra functions whose results are masked",
    )
    schema_prefix: str = Field("refcheck", description="Sandbox schema name prefix")
    only: Dict[str, List[int]] = Field(
        default_factory=dict,
        description="Document name -> snippet ordinals to run (with dependencies)",
    )

    @field_validator("schema_prefix")
    @classmethod
    def validate_schema_prefix(cls, v: str) -> str:
        if not _IDENTIFIER.match(v):
            raise ValueError(
                "schema_prefix must be a lower-case identifier of at most 40 characters"
            )
        return v

    @field_validator("volatile_functions")
    @classmethod
    def normalize_functions(cls, v: List[str]) -> List[str]:
        return [name.strip().lower() for name in v if name.strip()]

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RunOptions":
        config = config or default_settings
        return cls(
            isolation_mode=config.ISOLATION_MODE,
            statement_timeout=config.STATEMENT_TIMEOUT_SECONDS,
            document_timeout=config.DOCUMENT_TIMEOUT_SECONDS,
            run_timeout=config.RUN_TIMEOUT_SECONDS,
            float_tolerance=config.FLOAT_TOLERANCE,
            schema_prefix=config.SANDBOX_SCHEMA_PREFIX,
        )

    def with_overrides(self, **overrides: Any) -> "RunOptions":
        """Copy with every non-None override applied (and validated)."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return RunOptions.model_validate(data)
        except ValidationError as e:
            raise ConfigError(str(e)) from e


def parse_only(selectors: List[str]) -> Dict[str, List[int]]:
    """
    Parse `DOC:ORDINAL[,ORDINAL...]` selectors.

    Raises:
        ConfigError: on malformed selectors
    """
    only: Dict[str, List[int]] = {}
    for selector in selectors:
        document, sep, ordinals = selector.rpartition(":")
        if not sep or not document:
            raise ConfigError(f"invalid snippet selector {selector!r} (want DOC:N)")
        try:
            numbers = [int(item) for item in ordinals.split(",") if item.strip()]
        except ValueError:
            raise ConfigError(f"invalid snippet selector {selector!r}") from None
        if not numbers or any(n < 1 for n in numbers):
            raise ConfigError(f"invalid snippet selector {selector!r}")
        only.setdefault(document, []).extend(numbers)
    return only


def load_run_config(path: Path, base: Optional[RunOptions] = None) -> RunOptions:
    """
    Load a YAML run file on top of `base`.

    Args:
        path: YAML file path
        base: Options to override (default: from settings)

    Returns:
        RunOptions

    Raises:
        ConfigError: missing file, bad YAML, unknown keys, invalid values
    """
    base = base or RunOptions.from_settings()
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Run config not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    unknown = sorted(set(data) - set(RunOptions.model_fields))
    if unknown:
        raise ConfigError(f"{path}: unknown keys {', '.join(unknown)}")

    logger.info("Loaded run config from %s", path)
    return base.with_overrides(**data)
