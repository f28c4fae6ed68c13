from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reelcraft.models.base import Base


class Voiceover(Base):
    """A synthesized narration of one script with one voice."""

    __tablename__ = "voiceovers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    script_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("scripts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    voice_name: Mapped[str] = mapped_column(String(100), nullable=False)
    voice_id: Mapped[str] = mapped_column(String(100), nullable=False)
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    # Metadata only. The pipeline probes the file itself.
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    script: Mapped["Script"] = relationship("Script", back_populates="voiceovers")  # noqa: F821

    def __repr__(self) -> str:
        return f"<Voiceover {self.id} ({self.voice_name})>"
