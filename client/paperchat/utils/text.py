"""Small text helpers shared by the query and upload workflows."""

TITLE_MAX_CHARS = 50


def make_title(text: str, max_chars: int = TITLE_MAX_CHARS) -> str:
    """First `max_chars` characters of `text`, with an ellipsis when truncated."""
    if len(text) > max_chars:
        return text[:max_chars] + "..."
    return text


def strip_pdf_extension(filename: str) -> str:
    if filename.lower().endswith(".pdf"):
        return filename[:-4]
    return filename


def format_duplicate_summary(titles: list[str | None], shown: int = 5) -> str:
    """User-facing summary for an upload where every file is already in the library."""
    count = len(titles)
    names = [t or "Unknown" for t in titles]
    listed = "\n".join(f"• {name}" for name in names[:shown])
    more = count - shown
    if more > 0:
        listed += f"\n• ...and {more} more"
    noun = "files are" if count > 1 else "file is"
    return f"All {count} {noun} already in your library:\n\n{listed}\n\nNo files were uploaded."
