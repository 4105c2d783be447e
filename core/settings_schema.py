from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping


_ALLOWED_STRUCTURE: Dict[str, Any] = {
    "gateway": {
        "base_url",
        "anon_key",
        "service_key",
        "user_id",
        "timeout_s",
    },
    "polling": {
        "max_attempts",
        "final_checks",
        "final_check_delay_ms",
        "finalization_threshold",
        "schedule_ms",
        "max_interval_ms",
        "finalizing_fast_polls",
        "finalizing_fast_ms",
        "finalizing_slow_base_ms",
        "finalizing_step_ms",
        "transient_base_ms",
        "history_lookup_limit",
    },
    "monitor": {
        "interval_s",
        "max_checks",
        "self_heal_after",
        "log_every",
    },
    "history": "*",
    "restore": "*",
    "auto_download": "*",
    "api": "*",
    "working_dir": None,
    "version": None,
}


@dataclass(slots=True)
class SettingsValidator:
    schema: Mapping[str, Any]

    def unknown_keys(self, payload: Mapping[str, Any]) -> Iterable[str]:
        return sorted(self._iter_unknown(payload, self.schema, path=""))

    def _iter_unknown(self, payload: Mapping[str, Any], schema: Mapping[str, Any], *, path: str) -> Iterable[str]:
        for key, value in payload.items():
            if key not in schema:
                yield f"{path}{key}"
                continue
            rule = schema[key]
            if rule is None or rule == "*":
                continue
            if isinstance(rule, set):
                if not isinstance(value, Mapping):
                    continue
                for sub in value.keys():
                    if sub not in rule:
                        yield f"{path}{key}.{sub}"
                continue
            if isinstance(rule, Mapping) and isinstance(value, Mapping):
                yield from self._iter_unknown(value, rule, path=f"{path}{key}.")


SETTINGS_VALIDATOR = SettingsValidator(_ALLOWED_STRUCTURE)

__all__ = ["SETTINGS_VALIDATOR", "SettingsValidator"]
