"""Shared constants for electron-pilot."""

# Input limits
MAX_COMMAND_LENGTH = 5000

# Content display truncation limits
CONTENT_PREVIEW_LENGTH = 200
LOG_COMMAND_PREVIEW_LENGTH = 100


def truncate(text: str, max_length: int = CONTENT_PREVIEW_LENGTH) -> str:
    """Truncate text with ellipsis if it exceeds max_length."""
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def format_size(size_bytes: int) -> str:
    """Format byte count as human-readable string (B, KB, MB)."""
    if size_bytes < 1024:
        return f"{size_bytes}B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f}KB"
    return f"{size_bytes / (1024 * 1024):.1f}MB"
