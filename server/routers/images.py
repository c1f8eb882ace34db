"""Image version routes.

GET    /images/{dir/file.ext}?action=resize&width=100  -> 302 to the version
GET    /images/{dir/file.ext}?json=true                -> original metadata
DELETE /images/{dir/file.ext}?action=...               -> flush cached keys
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse, RedirectResponse

from core.container import container
from core.logging import get_logger
from models.image import ImageRequest
from services.coordinator import ArtifactCoordinator
from services.errors import ErrorKind, ImageServerError

logger = get_logger(__name__)
router = APIRouter(prefix="/images", tags=["images"])

ERROR_STATUS = {
    ErrorKind.NO_SUCH_SOURCE: status.HTTP_404_NOT_FOUND,
    ErrorKind.TRANSFORM_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.UPLOAD_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.LOCK_TIMEOUT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _image_request(
    path: str,
    action: Optional[str] = None,
    width: Optional[int] = Query(default=None, ge=1),
    height: Optional[int] = Query(default=None, ge=1),
    crop_x: Optional[int] = Query(default=None, ge=0, alias="cropX"),
    crop_y: Optional[int] = Query(default=None, ge=0, alias="cropY"),
    json: bool = False,
    flush: bool = False,
) -> ImageRequest:
    options = {
        "action": action,
        "width": width,
        "height": height,
        "crop_x": crop_x,
        "crop_y": crop_y,
    }
    return ImageRequest.from_path(path, {k: v for k, v in options.items() if v is not None},
                                  json=json, flush=flush)


def _error_response(error: ImageServerError) -> JSONResponse:
    code = ERROR_STATUS.get(error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    kind = error.kind.value if error.kind else None
    return JSONResponse(
        status_code=code,
        content={"success": False, "error": str(error), "kind": kind},
    )


def _unsupported(image: ImageRequest) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
        content={"success": False, "error": f"unsupported format: {image.ext or '(none)'}"},
    )


@router.get("/{path:path}")
async def get_image(
    image: ImageRequest = Depends(_image_request),
    coordinator: ArtifactCoordinator = Depends(lambda: container.coordinator()),
):
    """Redirect to the requested version, generating it on first request."""
    if not image.valid_extension():
        return _unsupported(image)

    try:
        if image.json:
            metadata = await coordinator.get_metadata(image)
            return {"success": True, "metadata": metadata}

        result = await coordinator.get_version(image)
    except ImageServerError as e:
        logger.error("Image request failed", path=f"{image.dir}/{image.file}.{image.ext}",
                     kind=e.kind, error=str(e))
        return _error_response(e)

    logger.info("Serving version", url=result.url, cached=result.cached)
    return RedirectResponse(result.url, status_code=status.HTTP_302_FOUND)


@router.delete("/{path:path}")
async def flush_image(
    image: ImageRequest = Depends(_image_request),
    coordinator: ArtifactCoordinator = Depends(lambda: container.coordinator()),
):
    """Drop the version record and cached original params."""
    if not image.valid_extension():
        return _unsupported(image)

    try:
        deleted = await coordinator.flush_keys(image)
    except ImageServerError as e:
        return _error_response(e)
    return {"success": True, "deleted": deleted}
