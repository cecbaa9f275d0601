"""Read-only query surface over the audit trail."""
from typing import Optional

import structlog

from employee_sync.config import Settings, get_settings
from employee_sync.core.schemas import AuditLogFilter, AuditRecordView, Page, PageRequest
from employee_sync.database.repositories import AuditStore

logger = structlog.get_logger(__name__)


class AuditQueryService:
    """Searches audit records, oldest first unless another sort is given."""

    def __init__(self, store: AuditStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    async def search(
        self,
        filter: Optional[AuditLogFilter] = None,
        page_request: Optional[PageRequest] = None,
    ) -> Page[AuditRecordView]:
        """
        Search the audit trail.

        Args:
            filter: Free-text search over action or entity name, plus exact
                action / entity name / entity id filters
            page_request: Zero-based page, size (default 20, capped) and
                ``"<field>,<asc|desc>"`` sort

        Returns:
            Page[AuditRecordView]: Matching records

        Raises:
            ValidationError: Unknown sort field or direction
        """
        filter = filter or AuditLogFilter()
        page_request = page_request or PageRequest()
        size = min(
            page_request.size or self.settings.audit_default_page_size,
            self.settings.audit_max_page_size,
        )

        rows, total = await self.store.search(filter, page_request.page, size, page_request.sort)
        logger.debug("audit_search", search=filter.search, total=total, page=page_request.page)

        return Page[AuditRecordView](
            items=[AuditRecordView.model_validate(row) for row in rows],
            total=total,
            page=page_request.page,
            size=size,
        )
