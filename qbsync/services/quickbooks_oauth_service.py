"""
QuickBooks OAuth 2.0 Token Manager

This service handles:
- OAuth flow initiation and authorization code exchange
- Active credential lookup per realm
- Token refresh (a refresh persists a new credential row)
- Token revocation
"""
from datetime import timedelta
from typing import Optional
from intuitlib.client import AuthClient
from intuitlib.enums import Scopes
from intuitlib.exceptions import AuthClientError
from sqlalchemy.orm import Session
from qbsync.config import QuickBooksConfig
from qbsync.core.exceptions import AuthenticationError
from qbsync.core.timeutils import utcnow
from qbsync.models.quickbooks_connection import QuickBooksConnection
import logging

logger = logging.getLogger(__name__)


class QuickBooksOAuthService:
    """Obtains and refreshes QuickBooks bearer credentials per realm"""

    def __init__(self, config: QuickBooksConfig):
        self.config = config

        if not config.client_id or not config.client_secret:
            logger.warning("QuickBooks credentials not configured. Set QUICKBOOKS_CLIENT_ID and QUICKBOOKS_CLIENT_SECRET")

    def _auth_client(self, **kwargs) -> AuthClient:
        return AuthClient(
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            redirect_uri=self.config.redirect_uri,
            environment=self.config.environment,
            **kwargs,
        )

    def get_authorization_url(self, state: Optional[str] = None) -> str:
        """
        Generate QuickBooks authorization URL

        Args:
            state: Optional state parameter for CSRF protection

        Returns:
            Authorization URL for user to visit
        """
        auth_client = self._auth_client(state_token=state)
        return auth_client.get_authorization_url([Scopes.ACCOUNTING])

    def exchange_code_for_tokens(self, db: Session, authorization_code: str, realm_id: str) -> QuickBooksConnection:
        """
        Exchange authorization code for access and refresh tokens

        Stores a new active credential for the realm and deactivates older ones.
        """
        auth_client = self._auth_client()
        try:
            auth_client.get_bearer_token(authorization_code, realm_id=realm_id)
        except AuthClientError as e:
            logger.error(f"OAuth error for realm_id {realm_id}: {str(e)}")
            raise AuthenticationError(f"Failed to exchange authorization code: {str(e)}")

        connection = self._store_credential(db, realm_id, auth_client)
        logger.info(f"Successfully stored tokens for realm_id: {realm_id}")
        return connection

    def get_active_connection(self, db: Session, realm_id: str) -> Optional[QuickBooksConnection]:
        return (
            db.query(QuickBooksConnection)
            .filter(QuickBooksConnection.realm_id == realm_id, QuickBooksConnection.is_active.is_(True))
            .order_by(QuickBooksConnection.created_at.desc())
            .first()
        )

    def list_active_connections(self, db: Session) -> list[QuickBooksConnection]:
        return (
            db.query(QuickBooksConnection)
            .filter(QuickBooksConnection.is_active.is_(True))
            .order_by(QuickBooksConnection.created_at.desc())
            .all()
        )

    def is_expired(self, connection: QuickBooksConnection) -> bool:
        # Treat tokens expiring within the skew window as already expired
        skew = timedelta(seconds=self.config.token_expiry_skew_seconds)
        return utcnow() + skew >= connection.access_token_expires_at

    def get_token(self, db: Session, realm_id: str) -> Optional[QuickBooksConnection]:
        """
        Active credential for the realm, refreshed first if it has expired

        Returns:
            The usable QuickBooksConnection, or None when the realm has no active credential
        """
        connection = self.get_active_connection(db, realm_id)
        if connection is None:
            return None

        if self.is_expired(connection):
            logger.info(f"Token expired for realm_id {realm_id}, refreshing...")
            connection = self.refresh_tokens(db, connection)

        return connection

    def refresh_tokens(self, db: Session, connection: QuickBooksConnection) -> QuickBooksConnection:
        """
        Refresh the access token using the stored refresh token

        The refreshed tokens are written as a new credential row; every prior
        row for the realm is deactivated in the same commit. On failure nothing
        is deactivated and AuthenticationError is raised.
        """
        auth_client = self._auth_client()
        try:
            auth_client.refresh(refresh_token=connection.refresh_token)
        except AuthClientError as e:
            logger.error(f"Token refresh error for realm_id {connection.realm_id}: {str(e)}")
            raise AuthenticationError(f"Failed to refresh token: {str(e)}")

        refreshed = self._store_credential(
            db, connection.realm_id, auth_client, company_name=connection.company_name
        )
        logger.info(f"Successfully refreshed tokens for realm_id: {connection.realm_id}")
        return refreshed

    def revoke_tokens(self, db: Session, connection: QuickBooksConnection) -> bool:
        """
        Revoke QuickBooks tokens and deactivate the connection

        Returns:
            True if QuickBooks accepted the revocation
        """
        auth_client = self._auth_client()
        try:
            auth_client.revoke(token=connection.refresh_token)
        except AuthClientError as e:
            logger.error(f"Error revoking tokens for realm_id {connection.realm_id}: {str(e)}")
            return False

        connection.is_active = False
        db.commit()
        logger.info(f"Successfully revoked tokens for realm_id: {connection.realm_id}")
        return True

    def _store_credential(
        self,
        db: Session,
        realm_id: str,
        auth_client: AuthClient,
        company_name: Optional[str] = None,
    ) -> QuickBooksConnection:
        now = utcnow()
        refresh_expires_at = None
        if auth_client.x_refresh_token_expires_in:
            refresh_expires_at = now + timedelta(seconds=auth_client.x_refresh_token_expires_in)

        db.query(QuickBooksConnection).filter(
            QuickBooksConnection.realm_id == realm_id,
            QuickBooksConnection.is_active.is_(True),
        ).update({"is_active": False}, synchronize_session=False)

        connection = QuickBooksConnection(
            realm_id=realm_id,
            company_name=company_name,
            access_token=auth_client.access_token,
            refresh_token=auth_client.refresh_token,
            access_token_expires_at=now + timedelta(seconds=auth_client.expires_in or 3600),
            refresh_token_expires_at=refresh_expires_at,
            is_active=True,
        )
        db.add(connection)
        db.commit()
        db.refresh(connection)
        return connection
