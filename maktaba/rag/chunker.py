"""Text chunking utilities.

This module provides functions for splitting page text into chunks.
"""

from langchain_text_splitters import RecursiveCharacterTextSplitter

# Paragraphs, lines, then Latin and Arabic sentence and clause punctuation
SEPARATORS = ["\n\n", "\n", ". ", "؟ ", "? ", "! ", "، ", ", ", " ", ""]


def chunk_page(
    text: str, chunk_size: int, chunk_overlap: int, min_chars: int = 10
) -> list[str]:
    """Split one page of text into overlapping chunks.

    Args:
        text: Extracted page text.
        chunk_size: Target size for each chunk.
        chunk_overlap: Overlap between consecutive chunks.
        min_chars: Chunks shorter than this (after stripping) are dropped.

    Returns:
        List of text chunks in page order.
    """
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        length_function=len,
        separators=SEPARATORS,
    )
    chunks = [c.strip() for c in splitter.split_text(text)]
    return [c for c in chunks if len(c) >= min_chars]
