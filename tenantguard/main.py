"""tenantguard entrypoint."""

import uvicorn

from tenantguard.config.settings import get_settings


def cli() -> None:
    """CLI entrypoint."""
    settings = get_settings()
    uvicorn.run("tenantguard.web.app:create_app", factory=True, reload=settings.debug)


if __name__ == "__main__":
    cli()
