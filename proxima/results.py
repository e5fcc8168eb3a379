"""Result dataclasses used by batch style operations."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ApplyResult:
    created: list[str] = field(default_factory=list)
    existing: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_dict(self) -> dict[str, object]:
        return {
            'created': list(self.created),
            'existing': list(self.existing),
            'failed': dict(self.failed),
        }
