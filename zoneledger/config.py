"""Settings for publishing public epoch documents."""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from .epoch import SCHEMA_VERSION_V1
from .publisher import KeyMode, Partitioner, _label


@dataclass
class PublicPublisherConfig:
    """The knobs needed to publish public epoch documents."""

    enabled: bool = False
    topic: str = ""
    brokers: list[str] = field(default_factory=list)
    acks: int = -1
    partitioner: Partitioner | str = Partitioner.HASH
    key_mode: KeyMode | str = KeyMode.ZONE
    schema_version: str = SCHEMA_VERSION_V1

    def validate(self) -> None:
        """Raise ValueError unless the settings are consistent."""
        if self.partitioner not in (Partitioner.HASH, Partitioner.ROUND_ROBIN):
            raise ValueError(f"unsupported public partitioner: {_label(self.partitioner)}")
        if self.key_mode not in (KeyMode.ZONE, KeyMode.EPOCH, KeyMode.NONE):
            raise ValueError(f"unsupported public key mode: {_label(self.key_mode)}")
        if self.acks not in (-1, 0, 1):
            raise ValueError(f"public acks must be -1, 0, or 1: {self.acks}")
        if not self.schema_version.strip():
            raise ValueError("public schema version is required")
        if self.enabled:
            if not self.topic.strip():
                raise ValueError("public topic is required when enabled")
            if not self.brokers:
                raise ValueError("at least one public broker is required when enabled")

    def clone(self) -> PublicPublisherConfig:
        """Return a copy whose broker list can be changed independently."""
        return replace(self, brokers=list(self.brokers))