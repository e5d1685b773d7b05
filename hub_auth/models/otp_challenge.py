from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from hub_auth.db.session import Base
from hub_auth.models.common import UUIDMixin, TimestampMixin

class OtpChallenge(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "otp_challenges"
    __table_args__ = (UniqueConstraint("app_id", "identity", name="uq_otp_challenges_app_identity"),)

    app_id: Mapped[str] = mapped_column(String(64), nullable=False)
    identity: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    # Empty digest marks a locked challenge: the code is destroyed, the row
    # stays until expiry so verification keeps reporting "locked".
    code_digest: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
