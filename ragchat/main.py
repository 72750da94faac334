"""Main FastAPI application."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ragchat import __version__
from ragchat.api.endpoints import router
from ragchat.utils.logging import LogConfig, setup_logging

setup_logging(LogConfig.from_env())

# Create FastAPI application
app = FastAPI(
    title="ragchat",
    description=(
        "A retrieval-augmented chat service over user interviews. The assistant searches the "
        "interview index on demand and streams its answer, with live tool-call progress."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {
            "name": "Chat",
            "description": "Stream an assistant turn as server-sent events.",
        },
        {
            "name": "Search",
            "description": "Vector, keyword and hybrid search over interview passages.",
        },
        {
            "name": "Interviews",
            "description": "Interview metadata lookup.",
        },
        {
            "name": "Health",
            "description": "Service health monitoring and status checks.",
        },
    ],
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ragchat.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
