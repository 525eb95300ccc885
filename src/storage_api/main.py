import logging
from textwrap import dedent
from typing import Optional

import pydantic
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute

from storage_api.adapters.queue import BaseQueue, QueueFactory
from storage_api.adapters.storage import BaseStorage, StorageFactory
from storage_api.database import MetadataStore, get_metadata_store
from storage_api.errors import (
    StorageApiError,
    handle_broad_exceptions,
    handle_pydantic_validation_errors,
    handle_storage_api_errors,
)
from storage_api.routers.files import router as files_router
from storage_api.routers.health import router as health_router
from storage_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[BaseStorage] = None,
    metadata_store: Optional[MetadataStore] = None,
    queue: Optional[BaseQueue] = None,
) -> FastAPI:
    """
    Create a FastAPI application.

    Components default to the ones the deployment mode selects; tests pass
    their own.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="AI Cloud Storage API",
        summary="Store files and tag images automatically",
        version="v1",
        description=dedent(
            """\
        Upload files, list them with signed access URLs, download and delete them.
        Images are analyzed in the background and their records gain `tags`.

        | Mode | Object store | Queue |
        | --- | --- | --- |
        | `local-dev` | local directory | local directory |
        | `aws-mock` / `aws-prod` | S3 | SQS |
        """
        ),
        docs_url="/",  # its easier to find the docs when they live on the base url
        generate_unique_id_function=custom_generate_unique_id,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.storage = storage or StorageFactory.get_storage(settings)
    app.state.metadata_store = metadata_store or get_metadata_store(settings)
    app.state.queue = queue or QueueFactory.get_queue_handler(settings)
    logger.info("API created in %s mode", settings.deployment_mode)

    app.include_router(files_router, prefix="/v1", tags=["files"])
    app.include_router(health_router, tags=["health"])

    app.add_exception_handler(
        exc_class_or_status_code=StorageApiError,
        handler=handle_storage_api_errors,
    )
    app.add_exception_handler(
        exc_class_or_status_code=pydantic.ValidationError,
        handler=handle_pydantic_validation_errors,
    )
    app.middleware("http")(handle_broad_exceptions)

    return app


def custom_generate_unique_id(route: APIRoute):
    """
    Generate prettier `operationId`s in the OpenAPI schema.

    These become the function names in generated client SDKs.
    """
    return f"{route.tags[0]}-{route.name}"


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)
