"""Environment-driven settings for the oracle agent."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from src.oracle.chain import DEFAULT_ORACLE_CONTRACT, DEFAULT_RPC_URL

SIGNER_MODES = ("shade", "tee")

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Runtime settings, normally built with ``Settings.from_env()``."""
    rpc_url: str = DEFAULT_RPC_URL
    oracle_contract_address: str = DEFAULT_ORACLE_CONTRACT
    config_path: Path = Path("data/oracles.json")
    signer_mode: str = "shade"
    shade_agent_url: str = "http://localhost:3140"
    signer_account_id: Optional[str] = None
    use_tee_auth: bool = False
    tee_endpoint: Optional[str] = None
    signer_seed_key: Optional[str] = None
    min_gas_reserve_wei: int = 10**15
    rpc_timeout: float = 15.0
    signer_timeout: float = 30.0
    api_timeout: float = 10.0
    receipt_timeout: float = 30.0
    respect_active_flag: bool = False
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> "Settings":
        """
        Read settings from ``env`` (``os.environ`` by default).

        Raises:
            RuntimeError: If a value is malformed or a mode-specific
                requirement is missing
        """
        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ

        signer_mode = env.get("SIGNER_MODE", "shade").strip().lower()
        if signer_mode not in SIGNER_MODES:
            raise RuntimeError(f"SIGNER_MODE must be one of {', '.join(SIGNER_MODES)}, got '{signer_mode}'")

        settings = cls(
            rpc_url=env.get("RPC_URL") or DEFAULT_RPC_URL,
            oracle_contract_address=env.get("ORACLE_CONTRACT_ADDRESS") or DEFAULT_ORACLE_CONTRACT,
            config_path=Path(env.get("ORACLE_CONFIG_PATH") or "data/oracles.json"),
            signer_mode=signer_mode,
            shade_agent_url=env.get("SHADE_AGENT_URL") or "http://localhost:3140",
            signer_account_id=env.get("SIGNER_ACCOUNT_ID") or None,
            use_tee_auth=_flag(env, "USE_TEE_AUTH", False),
            tee_endpoint=env.get("DSTACK_SIMULATOR_ENDPOINT") or None,
            signer_seed_key=env.get("SIGNER_SEED_KEY") or None,
            min_gas_reserve_wei=_number(env, "MIN_GAS_RESERVE_WEI", 10**15, int),
            rpc_timeout=_number(env, "RPC_TIMEOUT_SECONDS", 15.0, float),
            signer_timeout=_number(env, "SIGNER_TIMEOUT_SECONDS", 30.0, float),
            api_timeout=_number(env, "API_TIMEOUT_SECONDS", 10.0, float),
            receipt_timeout=_number(env, "RECEIPT_TIMEOUT_SECONDS", 30.0, float),
            respect_active_flag=_flag(env, "ORACLE_RESPECT_ACTIVE_FLAG", False),
            host=env.get("AGENT_HOST") or "0.0.0.0",
            port=_number(env, "AGENT_PORT", 8000, int),
        )

        if settings.signer_mode == "tee":
            if not settings.signer_account_id:
                raise RuntimeError("Missing SIGNER_ACCOUNT_ID (required when SIGNER_MODE=tee)")
            if not settings.use_tee_auth and not settings.signer_seed_key:
                raise RuntimeError("Missing SIGNER_SEED_KEY (required when SIGNER_MODE=tee and USE_TEE_AUTH=false)")
        return settings


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise RuntimeError(f"Invalid value for {name}: '{raw}'")
