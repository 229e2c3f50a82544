from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace holding the ``Inheritor`` resources.
        inheritor_names: Resources reconciled on every resync, auto-created
                         when missing.
        resync_interval_seconds: Fixed delay before a resource is reconciled
                                 again, whatever the outcome of the last pass.
        watch_inheritors: Whether ``Inheritor`` changes trigger an immediate pass.
    """

    namespace: str
    inheritor_names: tuple[str, ...]
    resync_interval_seconds: int
    watch_inheritors: bool
    health_port: int
    leader_election: LeaderElectionConfig


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_names(raw: str) -> tuple[str, ...]:
    """Split a comma list into unique, non-empty names keeping their order."""
    return tuple(dict.fromkeys(part.strip() for part in raw.split(",") if part.strip()))


def default_identity(values: Mapping[str, str]) -> str:
    """Return this replica's lease identity, defaulting to the pod name.

    ``HOSTNAME`` is the pod name inside Kubernetes, which gives each replica a
    stable identity for lease ownership.
    """
    return values.get("HOSTNAME", values.get("POD_NAME", "unknown"))


def _load_leader_election(values: Mapping[str, str]) -> LeaderElectionConfig:
    lease_duration_seconds = env_int(
        values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1
    )
    renew_deadline_seconds = env_int(
        values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1
    )
    retry_period_seconds = env_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)

    if renew_deadline_seconds >= lease_duration_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period_seconds >= renew_deadline_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    lease_name = values.get("LEADER_ELECTION_LEASE_NAME", "label-inheritor-leader").strip()
    if not lease_name:
        raise ConfigError("LEADER_ELECTION_LEASE_NAME must be a non-empty string")

    return LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        lease_name=lease_name,
        identity=values.get("LEADER_ELECTION_IDENTITY") or default_identity(values),
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
    )


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Raises :class:`ConfigError` on the first invalid value so the process
    fails fast instead of reconciling with a half-valid configuration.
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "default").strip()
    if not namespace:
        raise ConfigError("WATCH_NAMESPACE must be a non-empty string")

    raw_names = values.get("INHERITOR_NAMES", "inheritor")
    inheritor_names = parse_names(raw_names)
    watch_inheritors = parse_bool(values.get("WATCH_INHERITORS"), default=True)
    if not inheritor_names and not watch_inheritors:
        raise ConfigError(
            "INHERITOR_NAMES must list at least one name when WATCH_INHERITORS is disabled"
        )

    return ControllerConfig(
        namespace=namespace,
        inheritor_names=inheritor_names,
        resync_interval_seconds=env_int(values, "RESYNC_INTERVAL_SECONDS", 120, minimum=1),
        watch_inheritors=watch_inheritors,
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        leader_election=_load_leader_election(values),
    )
