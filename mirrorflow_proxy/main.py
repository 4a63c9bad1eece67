import logging

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from mirrorflow_proxy.configs import settings
from mirrorflow_proxy.routes import play_router, proxy_router

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

docs_kwargs = {"docs_url": None, "redoc_url": None, "openapi_url": None} if settings.disable_docs else {}
app = FastAPI(title="MirrorFlow Proxy", **docs_kwargs)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["content-length", "content-range", "accept-ranges"],
)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


app.include_router(play_router, prefix="/play", tags=["play"])
app.include_router(proxy_router, prefix="/proxy", tags=["proxy"])


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8888, log_level="info")


if __name__ == "__main__":
    run()
