from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from mirrorflow_proxy.handlers import handle_manifest_proxy
from mirrorflow_proxy.schemas import ManifestProxyParams
from mirrorflow_proxy.utils.http_utils import get_forwarded_headers

proxy_router = APIRouter()


@proxy_router.head("/manifest", name="manifest_proxy")
@proxy_router.get("/manifest", name="manifest_proxy")
async def manifest_proxy(
    request: Request,
    params: Annotated[ManifestProxyParams, Query()],
    forwarded_headers: Annotated[dict, Depends(get_forwarded_headers)],
):
    """
    Proxify a manifest, segment or key from an allow-listed host.

    Manifests come back rewritten so every reference inside points at this
    endpoint again; segments and keys are streamed through.

    Args:
        request (Request): The incoming HTTP request.
        params (ManifestProxyParams): ``u`` (upstream URL) and ``c`` (cookie).
        forwarded_headers (dict): Range and related client headers.

    Returns:
        Response: The HTTP response with the processed manifest or the streamed content.
    """
    return await handle_manifest_proxy(request, params, forwarded_headers, method=request.method)
