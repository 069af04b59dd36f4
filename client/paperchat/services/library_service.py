import logging
from paperchat.core.config import Settings, get_settings
from paperchat.models import Paper, PaperStatus
from paperchat.schemas import PaperResponse
from paperchat.services.api_client import ApiClient
from paperchat.services.store import AppStore

logger = logging.getLogger(__name__)


def paper_from_response(resp: PaperResponse) -> Paper:
    try:
        status = PaperStatus(resp.status)
    except ValueError:
        status = PaperStatus.INDEXED
    return Paper(
        id=resp.paper_id,
        title=resp.title,
        authors=list(resp.authors),
        year=resp.year,
        filename=resp.filename,
        page_count=resp.page_count,
        chunk_count=resp.chunk_count,
        chunk_stats=dict(resp.chunk_stats),
        indexed_at=resp.indexed_at,
        status=status,
        error_message=resp.error_message,
        pdf_url=resp.pdf_url,
    )


class LibraryService:
    """Library listing and usage statistics. Refreshes are best effort."""

    def __init__(self, api: ApiClient, store: AppStore, settings: Settings | None = None):
        self.api = api
        self.store = store
        self.page_size = (settings or get_settings()).papers_page_size

    async def refresh_papers(self) -> None:
        try:
            resp = await self.api.get_papers(0, self.page_size)
        except Exception as e:
            logger.warning("Failed to refresh papers: %s", e)
            return
        self.store.library.set_papers(
            [paper_from_response(p) for p in resp.papers], total=resp.total, has_more=resp.has_more
        )

    async def load_more_papers(self) -> None:
        library = self.store.library
        if library.is_loading_more or not library.has_more:
            return

        library.set_loading_more(True)
        try:
            resp = await self.api.get_papers(len(library.papers), self.page_size)
        except Exception as e:
            logger.warning("Failed to load more papers: %s", e)
            library.set_loading_more(False)
            return
        library.append_papers([paper_from_response(p) for p in resp.papers], has_more=resp.has_more)

    async def delete_paper(self, paper_id: str) -> None:
        """Delete a paper remotely, then locally. Remote failures propagate."""
        try:
            await self.api.delete_paper(paper_id)
        except Exception:
            logger.exception("Failed to delete paper %s", paper_id)
            raise
        self.store.library.remove_paper(paper_id)
        await self.refresh_stats()

    async def refresh_stats(self) -> None:
        try:
            stats = await self.api.get_stats()
        except Exception as e:
            logger.warning("Failed to refresh stats: %s", e)
            return
        self.store.set_stats(stats)
