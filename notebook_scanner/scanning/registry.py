from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from .errors import Conflict, PageNotFound, TokenCollision
from .models import ImageRef, PageIdentity, PageRecord
from .repository import ScanRepository
from .tokens import TokenService

logger = logging.getLogger(__name__)


class PageRegistry:
    """
    Owns the (notebook, page index) -> page mapping and each page's token.

    ``resolve`` deliberately answers every miss (unknown, malformed, revoked
    or rotated-away token) with the same ``PageNotFound`` so callers cannot
    tell which tokens once existed.
    """

    def __init__(self, repository: ScanRepository, tokens: Optional[TokenService] = None, max_token_attempts: int = 8):
        self.repo = repository
        self.tokens = tokens or TokenService()
        self.max_token_attempts = max_token_attempts

    def resolve(self, token: str) -> PageIdentity:
        page = self.repo.get_page_by_token(token) if self.tokens.is_well_formed(token) else None
        if not page or page.token_revoked:
            raise PageNotFound("page not found")
        return page.identity()

    def get_page(self, page_id: str) -> PageRecord:
        page = self.repo.get_page(page_id)
        if not page:
            raise PageNotFound("page not found")
        return page

    def register(self, notebook_id: str, page_index: int) -> PageRecord:
        if page_index < 0:
            raise ValueError(f"page_index must be >= 0, got {page_index}")
        if self.repo.get_page_by_slot(notebook_id, page_index):
            raise Conflict(f"Page {page_index} already exists in notebook {notebook_id}")

        page_id = str(uuid.uuid4())
        for attempt in range(1, self.max_token_attempts + 1):
            page = PageRecord(id=page_id, notebook_id=notebook_id, page_index=page_index, token=self._fresh_token())
            try:
                self.repo.insert_page(page)
            except TokenCollision:
                logger.warning("Token collision registering notebook %s page %s (attempt %s)", notebook_id, page_index, attempt)
                continue
            logger.info("Registered page %s as notebook %s index %s", page.id, notebook_id, page_index)
            return page
        raise Conflict(f"Could not mint a unique token for notebook {notebook_id} page {page_index}")

    def register_range(self, notebook_id: str, start: int, end: int) -> List[PageRecord]:
        """
        Provision every slot in ``[start, end]``. Slots that already exist are
        kept as they are and included in the result.
        """
        if start < 0 or end < start:
            raise ValueError(f"Invalid page range {start}..{end}")
        pages: List[PageRecord] = []
        for page_index in range(start, end + 1):
            existing = self.repo.get_page_by_slot(notebook_id, page_index)
            if existing:
                pages.append(existing)
                continue
            try:
                pages.append(self.register(notebook_id, page_index))
            except Conflict:
                # Registered concurrently by another request.
                page = self.repo.get_page_by_slot(notebook_id, page_index)
                if not page:
                    raise
                pages.append(page)
        return pages

    def append_image(self, page_id: str, image: ImageRef) -> PageRecord:
        if not self.repo.append_page_image(page_id, image):
            raise PageNotFound("page not found")
        return self.get_page(page_id)

    def rotate_token(self, page_id: str) -> PageRecord:
        self.get_page(page_id)
        for attempt in range(1, self.max_token_attempts + 1):
            try:
                if not self.repo.replace_page_token(page_id, self._fresh_token()):
                    raise PageNotFound("page not found")
            except TokenCollision:
                logger.warning("Token collision rotating page %s (attempt %s)", page_id, attempt)
                continue
            logger.info("Rotated token for page %s", page_id)
            return self.get_page(page_id)
        raise Conflict(f"Could not mint a unique token for page {page_id}")

    def revoke_token(self, page_id: str) -> PageRecord:
        if not self.repo.revoke_page_token(page_id):
            raise PageNotFound("page not found")
        logger.info("Revoked token for page %s", page_id)
        return self.get_page(page_id)

    def _fresh_token(self) -> str:
        for _ in range(self.max_token_attempts):
            token = self.tokens.generate()
            if not self.repo.token_in_use(token):
                return token
        # Let insert_page reject it; the caller retries.
        return self.tokens.generate()
