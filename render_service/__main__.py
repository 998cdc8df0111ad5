import uvicorn

from render_service.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("render_service.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
