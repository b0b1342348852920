from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Mapping

ENV_PREFIX = "CHAT_SYNC_"


@dataclass
class SyncConfig:
    page_size: int = 50
    confirm_window_seconds: float = 30.0
    sweep_interval_seconds: float = 5.0
    pending_timeout_seconds: float = 30.0
    presence_timeout_seconds: float = 3.0
    presence_poll_interval_seconds: float = 15.0
    typing_idle_seconds: float = 2.0
    typing_expiry_seconds: float = 3.0
    auto_mark_read: bool = True

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError("page_size must be positive")
        for name in (
            "confirm_window_seconds",
            "sweep_interval_seconds",
            "pending_timeout_seconds",
            "presence_timeout_seconds",
            "presence_poll_interval_seconds",
            "typing_idle_seconds",
            "typing_expiry_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @property
    def confirm_window_ms(self) -> int:
        return int(self.confirm_window_seconds * 1000)

    @property
    def pending_timeout_ms(self) -> int:
        return int(self.pending_timeout_seconds * 1000)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SyncConfig":
        """Build a config from ``CHAT_SYNC_*`` variables, e.g. ``CHAT_SYNC_PAGE_SIZE=20``.

        Unset variables keep their defaults. Malformed values raise ``ValueError``
        naming the offending variable.
        """

        environ = os.environ if environ is None else environ
        overrides: dict[str, object] = {}
        for field in fields(cls):
            key = ENV_PREFIX + field.name.upper()
            raw = environ.get(key)
            if raw is None or not raw.strip():
                continue
            raw = raw.strip()
            try:
                if field.type in ("bool", bool):
                    overrides[field.name] = _parse_bool(raw)
                elif field.type in ("int", int):
                    overrides[field.name] = int(raw)
                else:
                    overrides[field.name] = float(raw)
            except ValueError as exc:
                raise ValueError(f"invalid value for {key}: {raw!r}") from exc
        return cls(**overrides)


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(raw)
