"""
Configuration for the VAT extraction core.

Settings are plain dataclasses with working defaults (Irish rules as the
reference jurisdiction). load_config() layers a JSON or YAML file and then
VATDOC_* environment variables on top of those defaults.
"""

import os
import json
import logging
from dataclasses import dataclass, field, fields, asdict
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class JurisdictionConfig:
    """Tax rules for one jurisdiction."""

    code: str = "IE"
    valid_rates: List[Decimal] = field(
        default_factory=lambda: [Decimal("0"), Decimal("9"), Decimal("13.5"), Decimal("23")]
    )
    standard_rate: Decimal = Decimal("23")
    vat_number_pattern: str = r"^[A-Z]{2}[0-9]{7}[A-Z]{1,2}$"
    vat_number_prefix: str = "IE"
    currency: str = "EUR"
    currency_symbol: str = "€"
    registration_threshold: Decimal = Decimal("37500")
    round_value_threshold: Decimal = Decimal("100")
    large_amount_threshold: Decimal = Decimal("100000")

    def __post_init__(self):
        self.valid_rates = [Decimal(str(r)) for r in self.valid_rates]
        self.standard_rate = Decimal(str(self.standard_rate))
        self.registration_threshold = Decimal(str(self.registration_threshold))
        self.round_value_threshold = Decimal(str(self.round_value_threshold))
        self.large_amount_threshold = Decimal(str(self.large_amount_threshold))

    def is_valid_rate(self, rate: Union[Decimal, float, int]) -> bool:
        return Decimal(str(rate)) in self.valid_rates

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["valid_rates"] = [float(r) for r in self.valid_rates]
        for key in ("standard_rate", "registration_threshold", "round_value_threshold", "large_amount_threshold"):
            data[key] = float(data[key])
        return data


JURISDICTIONS: Dict[str, JurisdictionConfig] = {
    "IE": JurisdictionConfig(),
    "GB": JurisdictionConfig(
        code="GB",
        valid_rates=[Decimal("0"), Decimal("5"), Decimal("20")],
        standard_rate=Decimal("20"),
        vat_number_pattern=r"^GB(?:[0-9]{9}|[0-9]{12})$",
        vat_number_prefix="GB",
        currency="GBP",
        currency_symbol="£",
        registration_threshold=Decimal("90000"),
    ),
}


def get_jurisdiction(code: str) -> JurisdictionConfig:
    """Return a fresh copy of a built-in jurisdiction profile."""
    try:
        profile = JURISDICTIONS[code.upper()]
    except KeyError:
        raise ConfigurationError(f"Unknown jurisdiction: {code}")
    return JurisdictionConfig(**asdict(profile))


@dataclass
class PipelineConfig:
    """Pipeline-wide settings."""

    jurisdiction: JurisdictionConfig = field(default_factory=JurisdictionConfig)

    # Strategy confidence floors, checked in this order
    vision_floor: float = 0.70
    pattern_floor: float = 0.60
    template_floor: float = 0.50
    fallback_floor: float = 0.40

    # Batch throttling
    batch_size: int = 3
    pause_seconds: float = 1.0

    # Vision service
    vision_api_key: Optional[str] = None
    vision_base_url: str = "https://api.openai.com/v1/chat/completions"
    vision_model: str = "gpt-4o-mini"
    vision_timeout: float = 30.0
    vision_max_retries: int = 2
    vision_requests_per_minute: int = 50
    vision_review_below: float = 0.8

    # Spreadsheet subtotal heuristic
    subtotal_dominance_ratio: float = 1.5
    subtotal_keywords: List[str] = field(default_factory=lambda: ["subtotal", "total", "summary"])

    # Deep text scan plausibility range
    deep_scan_min: float = 0.01
    deep_scan_max: float = 10000.0

    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["jurisdiction"] = self.jurisdiction.to_dict()
        if data.get("vision_api_key"):
            data["vision_api_key"] = "***"
        return data

    def save(self, filepath: str):
        """Save configuration to a JSON or YAML file."""
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.to_dict()

        if path.suffix in (".yaml", ".yml"):
            with open(path, "w") as f:
                yaml.safe_dump(data, f, default_flow_style=False)
        elif path.suffix == ".json":
            with open(path, "w") as f:
                json.dump(data, f, indent=4)
        else:
            raise ConfigurationError(f"Unsupported file format: {path.suffix}")

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        data = dict(data)
        jurisdiction = data.pop("jurisdiction", None)
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {sorted(unknown)}")

        config = cls(**{k: v for k, v in data.items() if k in known})
        config.jurisdiction = _build_jurisdiction(jurisdiction)
        return config


def _build_jurisdiction(value: Any) -> JurisdictionConfig:
    if value is None:
        return JurisdictionConfig()
    if isinstance(value, JurisdictionConfig):
        return value
    if isinstance(value, str):
        return get_jurisdiction(value)
    if isinstance(value, dict):
        base = get_jurisdiction(value["code"]) if value.get("code", "").upper() in JURISDICTIONS else JurisdictionConfig()
        merged = asdict(base)
        merged.update(value)
        return JurisdictionConfig(**merged)
    raise ConfigurationError(f"Invalid jurisdiction configuration: {value!r}")


def load_config(filepath: Optional[str] = None, env_prefix: str = "VATDOC_") -> PipelineConfig:
    """
    Load configuration from file and environment variables.

    Args:
        filepath: Path to config file (YAML or JSON)
        env_prefix: Prefix for environment variables, e.g. VATDOC_BATCH_SIZE

    Returns:
        PipelineConfig instance
    """
    data: Dict[str, Any] = {}

    if filepath:
        path = Path(filepath)
        if path.exists():
            if path.suffix in (".yaml", ".yml"):
                with open(path) as f:
                    file_config = yaml.safe_load(f)
            elif path.suffix == ".json":
                with open(path) as f:
                    file_config = json.load(f)
            else:
                raise ConfigurationError(f"Unsupported file format: {path.suffix}")

            if file_config:
                data.update(file_config)
                logger.info(f"Configuration loaded from {path}")
        else:
            logger.warning(f"Config file not found: {path}")

    # Environment variables override file values
    for key, value in os.environ.items():
        if not key.startswith(env_prefix):
            continue
        config_key = key[len(env_prefix):].lower()
        if config_key == "vision_api_key":
            data[config_key] = value
            continue
        try:
            parsed_value = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            parsed_value = value
        data[config_key] = parsed_value
        logger.debug(f"Config from env: {config_key} = {parsed_value}")

    return PipelineConfig.from_dict(data)
