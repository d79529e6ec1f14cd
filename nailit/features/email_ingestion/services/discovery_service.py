"""
Discovery: turn a date range and keyword set into candidate message IDs.
"""

from collections.abc import Iterable
from datetime import date, timedelta

from nailit.features.email_ingestion.domain.models import DiscoveryRequest, DiscoveryResult
from nailit.features.email_ingestion.provider import MailProvider
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def _format_date(value: date) -> str:
    return value.strftime("%Y/%m/%d")


def _format_keyword(keyword: str) -> str:
    keyword = keyword.strip().replace('"', "")
    return f'"{keyword}"' if " " in keyword else keyword


def build_search_query(start_date: date, end_date: date, keywords: Iterable[str] = ()) -> str:
    """
    Gmail search expression for an inclusive date range.

    Gmail's before: is exclusive, so it is set to the day after end_date.
    """
    parts = [f"after:{_format_date(start_date)}", f"before:{_format_date(end_date + timedelta(days=1))}"]
    terms = [_format_keyword(k) for k in keywords if k and k.strip()]
    if terms:
        parts.append(f"({' OR '.join(terms)})")
    return " ".join(parts)


class DiscoveryService:
    def __init__(self, provider: MailProvider, page_size: int = 500):
        self.provider = provider
        self.page_size = page_size

    async def discover(self, request: DiscoveryRequest) -> DiscoveryResult:
        """
        Page through search results until max_results IDs or no further pages.

        Provider errors propagate; no partial result is returned.
        """
        query = build_search_query(request.start_date, request.end_date, request.keywords)
        logger.info("Starting message discovery", query=query, max_results=request.max_results)

        message_ids: list[str] = []
        seen: set[str] = set()
        pages = 0
        page_token = None

        while len(message_ids) < request.max_results:
            remaining = request.max_results - len(message_ids)
            page_ids, page_token = await self.provider.search_page(
                query, min(self.page_size, remaining), page_token
            )
            pages += 1

            for message_id in page_ids:
                if message_id in seen:
                    continue
                seen.add(message_id)
                message_ids.append(message_id)
                if len(message_ids) >= request.max_results:
                    break

            if not page_token:
                break

        logger.info("Message discovery completed", query=query, candidates=len(message_ids), pages=pages)
        return DiscoveryResult(message_ids=message_ids, query=query, pages=pages)
