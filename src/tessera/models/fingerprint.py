"""Fingerprint record model — the last successful (or failed) run of each node."""

from datetime import datetime
from sqlalchemy import String, Text, DateTime, JSON, Integer
from sqlalchemy.orm import Mapped, mapped_column
from tessera.core.database import Base


class FingerprintRecord(Base):
    __tablename__ = "fingerprints"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # target, dynamic, branch
    parent: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    build_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    command_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dependencies: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # dep name → fingerprint
    data_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    format: Mapped[str] = mapped_column(String(20), default="pickle")
    location: Mapped[str | None] = mapped_column(String(512), nullable=True)
    children: Mapped[list | None] = mapped_column(JSON, nullable=True)  # branch names, in order
    seed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    warnings: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def is_valid(self) -> bool:
        """Only records of completed, error-free runs can make a node up to date."""
        return self.error is None and self.data_hash is not None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind,
            "parent": self.parent,
            "build_id": self.build_id,
            "command_hash": self.command_hash,
            "dependencies": self.dependencies,
            "data_hash": self.data_hash,
            "format": self.format,
            "location": self.location,
            "children": self.children,
            "seed": self.seed,
            "bytes": self.bytes,
            "duration_ms": self.duration_ms,
            "warnings": self.warnings,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
