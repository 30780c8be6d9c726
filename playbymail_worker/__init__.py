"""Play-by-mail turn sheet pipeline worker."""
