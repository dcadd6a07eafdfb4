"""Source API client exceptions."""


class SourceError(Exception):
    """Base exception for source API failures."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ArticleNotFoundError(SourceError):
    """The source has no article with the requested id."""

    def __init__(self, article_id: int):
        self.article_id = article_id
        super().__init__(f"Article not found at source: {article_id}", status_code=404)


class RateLimitError(SourceError):
    """Raised when API rate limit is hit."""

    def __init__(self, retry_after: int = 60):
        self.retry_after = retry_after
        super().__init__(f"Rate limited. Retry after {retry_after}s", status_code=429)


class SourceUnavailableError(SourceError):
    """Transient failure (5xx or transport error) that survived all retries."""

    pass
