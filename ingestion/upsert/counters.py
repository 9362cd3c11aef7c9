from dataclasses import dataclass, asdict, fields
from typing import Dict


@dataclass
class UpsertCounters:
    """
    Accumulator threaded through one Upsert run.

    Product-level counters (insert / update / skip / error) drive the batch
    status; eav_* counters describe the attribute-level work.
    """
    read: int = 0
    insert: int = 0
    update: int = 0
    skip: int = 0
    error: int = 0
    eav_insert: int = 0
    eav_update: int = 0
    eav_reactivate: int = 0
    eav_deactivate: int = 0
    eav_skip: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

    def merge(self, other: "UpsertCounters") -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    @property
    def succeeded(self) -> int:
        return self.insert + self.update + self.skip
