"""CredentialRecord model - encrypted OAuth tokens for a connection."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class CredentialRecord(Base):
    """OAuth token set owned by exactly one Connection.

    Token columns hold Fernet ciphertext; only the credential vault
    decrypts them.
    """

    __tablename__ = "credential_records"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    connection_id = Column(
        String(36), ForeignKey("connections.id"), unique=True, nullable=False
    )
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_type = Column(String, nullable=True, default="Bearer")
    expires_at = Column(DateTime, nullable=True)  # None = does not expire
    scopes = Column(JSON, nullable=True)  # list[str]
    subject_id = Column(String, nullable=True)  # provider-side user/item id
    last_used_at = Column(DateTime, nullable=True)
    last_refreshed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    connection = relationship("Connection", back_populates="credential")

    def __repr__(self) -> str:
        # Never render token material
        return f"<CredentialRecord connection_id={self.connection_id!r}>"
