"""
Configuration Validation Module

Validates app.yaml against Pydantic schemas.
Ensures the config file is correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import string
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

from core.config_store import parse_config
from core.exceptions import ConfigInvalid

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    name: str = Field(default="vivault-automation", min_length=1)
    delegator_address: str = Field(min_length=1, description="Delegated signer address")


class LoopConfig(BaseModel):
    """Control loop timing"""
    interval_seconds: float = Field(default=60, ge=1, description="Polling interval")
    step_timeout_seconds: float = Field(default=60, gt=0, description="Per-call transactor deadline")
    force_timeout_seconds: float = Field(default=300, gt=0, description="HTTP wait for forced runs")


class OracleConfig(BaseModel):
    """VolatilityIndex oracle"""
    rpc_url: str = Field(min_length=1)
    contract_address: str = Field(min_length=1)
    timeout_seconds: float = Field(default=10, gt=0)
    max_confidence_bps: int = Field(default=500, gt=0, le=10000)
    max_staleness_seconds: Optional[float] = Field(default=None, gt=0)
    assets: List[str] = Field(min_length=1)
    feeds: Dict[str, str] = Field(default_factory=dict)

    @field_validator("feeds")
    @classmethod
    def validate_feed_ids(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Feed ids are bytes32 hex"""
        for asset, feed_id in v.items():
            if not (isinstance(feed_id, str) and feed_id.startswith("0x") and len(feed_id) == 66):
                raise ValueError(f"Feed id for {asset} must be 0x-prefixed bytes32 hex")
        return v


class VaultConfig(BaseModel):
    rpc_url: str = Field(min_length=1)
    address: str = Field(min_length=1)
    ability: str = Field(default="vault-contract-call", min_length=1)
    timeout_seconds: float = Field(default=10, gt=0)


class TransactorConfig(BaseModel):
    base_url: str = Field(min_length=1)
    api_key_env: str = Field(default="ABILITY_API_KEY")
    swap_ability: str = Field(default="uniswap-swap", min_length=1)


class PlanConfig(BaseModel):
    """Leg sizing per tier"""
    stable_symbol: str = Field(default="USDC", min_length=1)
    stable_address: str
    slippage_bps: int = Field(default=50, ge=0, le=10000)
    min_amount: float = Field(default=0, ge=0)
    fractions: Dict[str, float] = Field(default_factory=dict)

    @field_validator("stable_address")
    @classmethod
    def validate_stable_address(cls, v: str) -> str:
        """Swap target is a 20-byte hex address"""
        if not (v.startswith("0x") and len(v) == 42 and all(c in string.hexdigits for c in v[2:])):
            raise ValueError("stable_address must be a 0x-prefixed 20-byte hex address")
        return v

    @field_validator("fractions")
    @classmethod
    def validate_fractions(cls, v: Dict[str, float]) -> Dict[str, float]:
        for tier, fraction in v.items():
            if tier not in ("soft", "medium", "aggressive"):
                raise ValueError(f"Unknown tier '{tier}' in fractions")
            if fraction <= 0 or fraction > 1:
                raise ValueError(f"Fraction for {tier} must be 0 < f <= 1, got {fraction}")
        return v


class ApiConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=3000, gt=0, lt=65536)


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = True
    metrics_port: int = Field(default=9100, gt=0, lt=65536)


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="info", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5, gt=0)
    dedupe_seconds: float = Field(default=60, ge=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = "logs/vivault-automation.log"


class StateConfig(BaseModel):
    state_file: str = "data/.state.json"
    history_file: str = "data/rebalance_history.jsonl"
    lock_dir: str = "data"


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection
    loop: LoopConfig = Field(default_factory=LoopConfig)
    oracle: OracleConfig
    vault: VaultConfig
    transactor: TransactorConfig
    plan: PlanConfig
    automation: Dict[str, Any] = Field(default_factory=dict)
    api: ApiConfig = Field(default_factory=ApiConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state: StateConfig = Field(default_factory=StateConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_app(config_dir: Path) -> List[str]:
    """
    Validate app.yaml against schema.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    app_path = config_dir / "app.yaml"

    try:
        config = load_yaml_file(app_path)
        AppSchema(**config)
        logger.info("✅ app.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"app.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"app.yaml: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"app.yaml: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"app.yaml: top level must be a mapping - {e}")

    return errors


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks beyond per-field types.

    Returns:
        List of error messages (empty if consistent)
    """
    errors = []
    config = load_yaml_file(config_dir / "app.yaml")

    try:
        parse_config(config.get("automation") or {})
    except ConfigInvalid as e:
        errors.extend(f"app.yaml: automation -> {err}" for err in e.errors)

    oracle = config.get("oracle") or {}
    feeds = oracle.get("feeds") or {}
    for asset in oracle.get("assets") or []:
        if feeds and asset.upper() not in {k.upper() for k in feeds}:
            errors.append(f"app.yaml: oracle -> assets: no feed id configured for {asset}")

    interval = float((config.get("loop") or {}).get("interval_seconds", 60))
    staleness = oracle.get("max_staleness_seconds")
    if staleness is not None and float(staleness) < interval:
        errors.append(
            f"app.yaml: oracle -> max_staleness_seconds ({staleness}) is shorter than "
            f"loop.interval_seconds ({interval}); every reading would be stale"
        )

    fractions = (config.get("plan") or {}).get("fractions") or {}
    ordered = [fractions[t] for t in ("soft", "medium", "aggressive") if t in fractions]
    if ordered != sorted(ordered):
        errors.append("app.yaml: plan -> fractions must not decrease from soft to aggressive")

    api = config.get("api") or {}
    monitoring = config.get("monitoring") or {}
    if api.get("enabled", True) and monitoring.get("metrics_enabled", True):
        if api.get("port", 3000) == monitoring.get("metrics_port", 9100):
            errors.append("app.yaml: api.port and monitoring.metrics_port must differ")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = validate_app(config_path)

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
