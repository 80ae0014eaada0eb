"""
bloom.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for the tunables of the daily job (leader window,
certificate issuance, outbox delivery).  Per-call limits such as the
daily flower allowance are service parameters defaulting to
:mod:`bloom.constants`.  Secrets such as ``DATABASE_URL`` stay in the environment.

Usage::

    from bloom.config import load_config

    cfg = load_config()                # reads ./config.yaml by default
    print(cfg.certificate_top_n)       # 3
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from bloom import constants


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BloomConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every field has a default equal to the matching value in
    :mod:`bloom.constants`, so a partial file is valid.
    """

    # Identity
    community_name: str = "Bloom Reading Club"

    # Leaders
    leader_window_days: int = constants.LEADER_WINDOW_DAYS

    # Certificates
    certificate_top_n: int = constants.CERTIFICATE_TOP_N
    certificate_validity_years: int = constants.CERTIFICATE_VALIDITY_YEARS

    # Outbox
    outbox_batch_size: int = constants.OUTBOX_BATCH_SIZE
    outbox_max_attempts: int = constants.OUTBOX_MAX_ATTEMPTS


_INT_KEYS = (
    "leader_window_days",
    "certificate_top_n",
    "certificate_validity_years",
    "outbox_batch_size",
    "outbox_max_attempts",
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> BloomConfig:
    """Read *path* and return a :class:`BloomConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a numeric setting is not a positive integer.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    kwargs: dict[str, object] = {}
    if "community_name" in raw:
        kwargs["community_name"] = str(raw["community_name"])

    for key in _INT_KEYS:
        if key not in raw:
            continue
        value = int(raw[key])
        if value <= 0:
            raise ValueError(f"Config key '{key}' must be a positive integer, got {value}")
        kwargs[key] = value

    return BloomConfig(**kwargs)
