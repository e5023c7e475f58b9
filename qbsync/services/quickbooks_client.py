"""
QuickBooks Online API client

Thin wrapper over the QBO v3 REST API bound to one realm. Every call goes
through _request, which retries transient failures (network, 429, 5xx) with
exponential backoff and, via with_token_refresh, refreshes the credential once
on an authentication failure.
"""
import functools
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests
from sqlalchemy.orm import Session

from qbsync.config import QuickBooksConfig
from qbsync.core.exceptions import AuthenticationError, QuickBooksAPIError
from qbsync.core.timeutils import format_cdc_timestamp
from qbsync.models.quickbooks_connection import QuickBooksConnection
from qbsync.services.quickbooks_oauth_service import QuickBooksOAuthService

logger = logging.getLogger(__name__)


def with_token_refresh(func: Callable) -> Callable:
    """Retry a client call once after refreshing the credential on 401/403"""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except QuickBooksAPIError as e:
            if not e.is_auth_failure:
                raise
            logger.warning(
                "Authentication failure (%s) for realm %s, refreshing token and retrying once",
                e.http_status,
                self.realm_id,
            )

        self.connection = self.oauth_service.refresh_tokens(self.db, self.connection)

        try:
            return func(self, *args, **kwargs)
        except QuickBooksAPIError as e:
            if e.is_auth_failure:
                raise AuthenticationError(
                    f"QuickBooks rejected the refreshed credential for realm {self.realm_id}",
                    details={"http_status": e.http_status, "error": e.message},
                )
            raise

    return wrapper


class QuickBooksClient:
    """QuickBooks API calls for one realm"""

    def __init__(
        self,
        config: QuickBooksConfig,
        oauth_service: QuickBooksOAuthService,
        db: Session,
        connection: QuickBooksConnection,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.oauth_service = oauth_service
        self.db = db
        self.connection = connection
        self.session = session or requests.Session()
        self.sleep = sleep
        self.base_url = f"{config.api_base_url}/v3/company"

    @property
    def realm_id(self) -> str:
        return self.connection.realm_id

    # Public API

    def query(self, sql: str) -> Dict[str, Any]:
        """Run a QBO SQL-like query and return the QueryResponse object"""
        data = self._request("GET", "query", params={"query": sql})
        return data.get("QueryResponse", {})

    def count(self, entity_type: str, where: Optional[str] = None) -> int:
        sql = f"SELECT COUNT(*) FROM {entity_type}"
        if where:
            sql += f" WHERE {where}"
        return int(self.query(sql).get("totalCount", 0) or 0)

    def query_page(
        self,
        entity_type: str,
        start_position: int,
        max_results: int,
        where: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """One page of entities; QBO positions are 1-indexed"""
        sql = f"SELECT * FROM {entity_type}"
        if where:
            sql += f" WHERE {where}"
        sql += f" STARTPOSITION {start_position} MAXRESULTS {max_results}"

        items = self.query(sql).get(entity_type, [])
        # QuickBooks may return a single dict instead of a list
        if isinstance(items, dict):
            items = [items]
        return items

    def get_company_info(self) -> Dict[str, Any]:
        data = self._request("GET", f"companyinfo/{self.realm_id}")
        return data.get("CompanyInfo", {})

    def cdc(self, entity_types: List[str], changed_since: datetime) -> List[Dict[str, Any]]:
        """Change data capture across several entity types in one request"""
        params = {
            "entities": ",".join(entity_types),
            "changedSince": format_cdc_timestamp(changed_since),
        }
        data = self._request("GET", "cdc", params=params)
        return data.get("CDCResponse", [])

    def create_invoice(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = self._request("POST", "invoice", json=payload)
        return data.get("Invoice", {})

    def update_invoice(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Sparse update; payload must carry Id and the last-known SyncToken"""
        body = {"sparse": True, **payload}
        data = self._request("POST", "invoice", json=body)
        return data.get("Invoice", {})

    # Transport

    @with_token_refresh
    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{self.realm_id}/{path}"
        query_params = {"minorversion": self.config.minor_version, **(params or {})}
        headers = {
            "Authorization": f"Bearer {self.connection.access_token}",
            "Accept": "application/json",
        }
        if json is not None:
            headers["Content-Type"] = "application/json"

        last_error: Optional[QuickBooksAPIError] = None
        for attempt in range(self.config.max_attempts):
            try:
                logger.debug(f"QuickBooks {method} {url} params={query_params}")
                response = self.session.request(
                    method,
                    url,
                    headers=headers,
                    params=query_params,
                    json=json,
                    timeout=self.config.request_timeout,
                )
            except requests.exceptions.RequestException as e:
                last_error = QuickBooksAPIError(f"QuickBooks request failed: {str(e)}")
            else:
                if response.status_code < 400:
                    return response.json()

                error = self._api_error(response)
                if response.status_code != 429 and response.status_code < 500:
                    raise error
                last_error = error

            if attempt < self.config.max_attempts - 1:
                delay = self.config.backoff_base_seconds * (2 ** attempt)
                logger.warning(
                    "Transient QuickBooks error on %s %s (attempt %s/%s): %s; retrying in %.1fs",
                    method,
                    path,
                    attempt + 1,
                    self.config.max_attempts,
                    last_error.message,
                    delay,
                )
                self.sleep(delay)

        logger.error(f"QuickBooks {method} {path} failed after {self.config.max_attempts} attempts: {last_error.message}")
        raise last_error

    def _api_error(self, response) -> QuickBooksAPIError:
        """Build an error from a QBO Fault body, falling back to the raw text"""
        message = f"QuickBooks API error {response.status_code}"
        details: Dict[str, Any] = {}
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            fault = body.get("Fault") or body.get("fault") or {}
            errors = fault.get("Error") or fault.get("error") or []
            if errors:
                first = errors[0]
                details = {
                    "message": first.get("Message") or first.get("message"),
                    "detail": first.get("Detail") or first.get("detail"),
                    "code": first.get("code"),
                }
                message = f"{message}: {details['message']}"
                if details["detail"]:
                    message = f"{message} ({details['detail']})"
        elif response.text:
            message = f"{message}: {response.text[:200]}"

        return QuickBooksAPIError(message, http_status=response.status_code, details=details)
