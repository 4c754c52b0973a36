"""notiontasks - local-first tasks, projects and time logs synced with Notion."""

__version__ = "0.1.0"
