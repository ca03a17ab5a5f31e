"""Runtime configuration loaded from ATTORNEY_* environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional

from .approval import DEFAULT_APPROVAL_TIMEOUT_SECONDS
from .audit import AUDIT_KEY_ENV


ATTORNEY_HOME_ENV = "ATTORNEY_HOME"
ATTORNEY_APPROVAL_TIMEOUT_ENV = "ATTORNEY_APPROVAL_TIMEOUT"
ATTORNEY_APPROVAL_URL_ENV = "ATTORNEY_APPROVAL_URL"
ATTORNEY_APPROVAL_SECRET_ENV = "ATTORNEY_APPROVAL_SECRET"
ATTORNEY_APPROVAL_THRESHOLD_ENV = "ATTORNEY_APPROVAL_THRESHOLD"

DEFAULT_ATTORNEY_HOME = Path.home() / ".attorney"


@dataclass(frozen=True)
class AttorneyConfig:
    home: Path = DEFAULT_ATTORNEY_HOME
    approval_timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS
    approval_url: Optional[str] = None
    approval_secret: Optional[str] = None
    approval_threshold: Optional[Decimal] = None
    audit_hmac_key: Optional[str] = None

    @property
    def mandates_dir(self) -> Path:
        return self.home / "mandates"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.home.parent / f"{self.home.name}-secrets" / "audit_hmac.key"

    @property
    def approval_configured(self) -> bool:
        return bool(self.approval_url and self.approval_secret)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> AttorneyConfig:
        env = os.environ if environ is None else environ

        home = env.get(ATTORNEY_HOME_ENV)
        raw_timeout = env.get(ATTORNEY_APPROVAL_TIMEOUT_ENV)
        try:
            timeout = float(raw_timeout) if raw_timeout else DEFAULT_APPROVAL_TIMEOUT_SECONDS
        except ValueError as exc:
            raise ValueError(f"{ATTORNEY_APPROVAL_TIMEOUT_ENV} must be a number of seconds, got {raw_timeout!r}") from exc
        if timeout <= 0:
            raise ValueError(f"{ATTORNEY_APPROVAL_TIMEOUT_ENV} must be > 0")

        raw_threshold = env.get(ATTORNEY_APPROVAL_THRESHOLD_ENV)
        try:
            threshold = Decimal(raw_threshold) if raw_threshold else None
        except InvalidOperation as exc:
            raise ValueError(f"{ATTORNEY_APPROVAL_THRESHOLD_ENV} must be a decimal amount, got {raw_threshold!r}") from exc

        return cls(
            home=Path(home).expanduser() if home else DEFAULT_ATTORNEY_HOME,
            approval_timeout_seconds=timeout,
            approval_url=env.get(ATTORNEY_APPROVAL_URL_ENV) or None,
            approval_secret=env.get(ATTORNEY_APPROVAL_SECRET_ENV) or None,
            approval_threshold=threshold,
            audit_hmac_key=env.get(AUDIT_KEY_ENV) or None,
        )
