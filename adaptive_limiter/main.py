"""ASGI entrypoint: ``uvicorn adaptive_limiter.main:app``."""

from adaptive_limiter.core.app_factory import create_app

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("adaptive_limiter.main:app", host="0.0.0.0", port=8000)
