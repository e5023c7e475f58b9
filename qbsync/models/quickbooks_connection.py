import uuid
from sqlalchemy import Column, String, DateTime, Boolean, Text, Uuid, func
from qbsync.core.database import Base

class QuickBooksConnection(Base):
    """OAuth credential for one QuickBooks company (realm).

    A refresh writes a new row and deactivates the previous ones, so a realm
    has any number of historical rows but at most one active credential.
    """
    __tablename__ = "quickbooks_connections"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    realm_id = Column(String, nullable=False, index=True)  # QuickBooks company ID
    company_name = Column(String, nullable=True)

    # OAuth tokens (should be encrypted in production)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    access_token_expires_at = Column(DateTime, nullable=False)
    refresh_token_expires_at = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False, index=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
