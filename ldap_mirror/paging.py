"""
Paged query driver.

Runs a single query to completion by repeatedly calling a page-fetch callable
with the continuation cookie returned by the previous page.
"""

import logging
from typing import Callable, List, Optional, Any

from ldap_mirror.entry import DirectoryEntry
from ldap_mirror.ldap_client import SearchPage
from ldap_mirror.transform import EntryTransformer

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 10_000

# (session, cookie, query) -> SearchPage
PageFetcher = Callable[[Any, Optional[bytes], str], SearchPage]


class PagedQueryDriver:
    """
    Accumulates every entry matching a query across pages.

    Paging stops when the server reports no more results or when the
    accumulated result set reaches ``max_results``, whichever comes first.
    A failing page aborts the whole query: the error propagates and no
    partial result set is returned.
    """

    def __init__(self, fetch_page: PageFetcher,
                 transformer: Optional[EntryTransformer] = None,
                 max_results: int = DEFAULT_MAX_RESULTS):
        if max_results <= 0:
            raise ValueError("max_results must be positive")
        self.fetch_page = fetch_page
        self.transformer = transformer or EntryTransformer()
        self.max_results = max_results

    def run(self, session, query: str) -> List[DirectoryEntry]:
        """
        Execute ``query`` against ``session`` until exhaustion or the cap.

        Returns:
            Transformed entries in server order, at most ``max_results``

        Raises:
            LDAPQueryError: If any page fetch fails
        """
        results: List[DirectoryEntry] = []
        cookie = None
        page_count = 0

        while True:
            page = self.fetch_page(session, cookie, query)
            page_count += 1
            logger.info(f"Found entries: {len(page.entries)} (page {page_count} of {query})")

            results.extend(self.transformer.transform(entry) for entry in page.entries)

            if len(results) >= self.max_results:
                if len(results) > self.max_results or page.more_results:
                    logger.warning(f"Result cap of {self.max_results} reached for {query}, "
                                   f"stopping after page {page_count}")
                del results[self.max_results:]
                break

            if not page.more_results:
                break
            cookie = page.cookie

        logger.debug(f"Query {query} completed: {len(results)} entries across {page_count} pages")
        return results
