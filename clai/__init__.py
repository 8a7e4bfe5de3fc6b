"""clai: ask questions about, or request edits to, a local codebase."""
