"""Turn sheet generation, scanning and codes."""
