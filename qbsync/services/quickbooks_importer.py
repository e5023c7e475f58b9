"""
Paginated historical import of one QuickBooks entity type
"""
import logging
from dataclasses import dataclass, asdict
from datetime import date
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from qbsync.config import QuickBooksConfig
from qbsync.core.exceptions import PreconditionError, QuickBooksAPIError
from qbsync.services import entity_store
from qbsync.services.entity_preparers import ENTITY_CONFIG, prepare_entity
from qbsync.services.quickbooks_client import QuickBooksClient

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    total: int = 0
    imported: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class QuickBooksImporter:
    """Full backfill for full and entity_specific sync jobs"""

    def __init__(self, config: QuickBooksConfig):
        self.config = config

    def import_entity(
        self,
        db: Session,
        client: QuickBooksClient,
        entity_type: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> ImportResult:
        """
        Count, then page through every record of entity_type and upsert it

        Pages are committed one at a time so a timeout mid-entity keeps the
        finished pages; re-running is safe because writes are upserts. The date
        bound only applies to transactional types (Invoice, Payment, Bill).
        A failed page fetch counts the remaining records as errors and stops;
        authentication errors propagate.
        """
        entity_config = ENTITY_CONFIG.get(entity_type)
        if entity_config is None:
            raise PreconditionError(f"Unsupported entity type: {entity_type}")

        if entity_type == "CompanyInfo":
            return self._import_company_info(db, client)

        where = self._date_filter(start_date, end_date) if entity_config.is_transactional else None
        total = client.count(entity_type, where)
        result = ImportResult(total=total)
        logger.info(f"Importing {total} {entity_type} records for realm {client.realm_id}")

        page_size = self.config.page_size
        start_position = 1
        while start_position <= total:
            try:
                page = client.query_page(entity_type, start_position, page_size, where)
            except QuickBooksAPIError as e:
                remaining = total - (start_position - 1)
                result.errors += remaining
                logger.error(
                    f"Failed to fetch {entity_type} page at position {start_position} "
                    f"for realm {client.realm_id}: {e.message}"
                )
                break

            if not page:
                break

            for entity in page:
                self._import_one(db, client.realm_id, entity_type, entity, result)
            db.commit()

            logger.debug(
                "%s page at %s: %s records (imported=%s errors=%s)",
                entity_type, start_position, len(page), result.imported, result.errors,
            )
            if len(page) < page_size:
                break
            start_position += page_size

        logger.info(
            "Imported %s: total=%s imported=%s errors=%s",
            entity_type, result.total, result.imported, result.errors,
        )
        return result

    def _import_company_info(self, db: Session, client: QuickBooksClient) -> ImportResult:
        company = client.get_company_info()
        result = ImportResult(total=1 if company else 0)
        if company:
            self._import_one(db, client.realm_id, "CompanyInfo", company, result)
            db.commit()
        return result

    def _import_one(
        self,
        db: Session,
        realm_id: str,
        entity_type: str,
        entity: Dict[str, Any],
        result: ImportResult,
    ) -> None:
        try:
            row = prepare_entity(entity, entity_type, realm_id)
            if row is None:
                return
            entity_store.upsert(db, entity_type, row)
            result.imported += 1
        except Exception as e:
            result.errors += 1
            logger.error(f"Failed to import {entity_type} {entity.get('Id')} for realm {realm_id}: {str(e)}")

    def _date_filter(self, start_date: Optional[date], end_date: Optional[date]) -> Optional[str]:
        clauses = []
        if start_date:
            clauses.append(f"TxnDate >= '{start_date.strftime('%Y-%m-%d')}'")
        if end_date:
            clauses.append(f"TxnDate <= '{end_date.strftime('%Y-%m-%d')}'")
        return " AND ".join(clauses) or None
