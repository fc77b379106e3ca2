from chatcache.logging_config import setup_logging
from chatcache.routes import create_app


# Configure logging once for the whole process.
setup_logging()

# FastAPI application instance for uvicorn.
app = create_app()


def run() -> None:
    import uvicorn

    # Logging is already configured by chatcache.logging_config.
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False, log_config=None)


if __name__ == "__main__":
    run()
