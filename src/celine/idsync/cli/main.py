"""CELINE IdP sync CLI - Main entrypoint.

Usage:
    celine-idsync token
    celine-idsync lookup ada@example.org
    celine-idsync migrate users.yaml --output users.migrated.yaml
"""

from __future__ import annotations

from celine.idsync.cli.commands import sync_app

app = sync_app


def create_app() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    create_app()
