import uvicorn

from tillpoint_api.core.settings import settings


def main() -> None:
    """Serve the loyalty API; auto-reload only while developing."""
    uvicorn.run(
        "tillpoint_api.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
    )


if __name__ == "__main__":
    main()
