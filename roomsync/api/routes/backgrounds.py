# roomsync/api/routes/backgrounds.py
import logging
from http import HTTPStatus

from fastapi import APIRouter, Depends, HTTPException, Path
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict, Field

from roomsync.api.dependencies.stores import get_background_store
from roomsync.db.backgrounds import BackgroundError, BackgroundStore, BackgroundTooLargeError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backgrounds", tags=["Backgrounds"])


class BackgroundUpload(BaseModel):
    """
    Request body of `POST /api/backgrounds/upload`.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: str | None = Field(None, description="Background slot: `main` or `schedule`.", examples=["main"])
    image_data: str | None = Field(
        None,
        alias="imageData",
        description="Data URL (`data:image/<jpeg|png|gif|webp>;base64,...`).",
    )


class BackgroundUploadResult(BaseModel):
    success: bool = True
    filename: str = Field(..., examples=["main-background-2025-01-15T02-00-00-000Z.jpg"])
    message: str


class BackgroundConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    main_background: str | None = Field(None, alias="mainBackground")
    schedule_background: str | None = Field(None, alias="scheduleBackground")


class BackgroundConfigResult(BaseModel):
    success: bool = True
    backgrounds: BackgroundConfig


class BackgroundResetResult(BaseModel):
    success: bool = True
    message: str


@router.post(
    "/upload",
    response_model=BackgroundUploadResult,
    summary="Upload a dashboard background image",
    description=(
        "Store an image for the `main` or `schedule` slot and make it the "
        "active background of that slot."
    ),
    responses={
        400: {"description": "Missing fields, unknown slot or malformed data URL."},
        413: {
            "description": "Decoded image exceeds the configured maximum size.",
            "content": {
                "application/json": {"example": {"detail": "Image too large. Maximum size is 15MB"}}
            },
        },
    },
)
def upload_background(
    payload: BackgroundUpload,
    backgrounds: BackgroundStore = Depends(get_background_store),
) -> BackgroundUploadResult:
    try:
        filename = backgrounds.upload(payload.type, payload.image_data)
    except BackgroundTooLargeError as exc:
        raise HTTPException(status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE, detail=str(exc)) from exc
    except BackgroundError as exc:
        raise HTTPException(status_code=HTTPStatus.BAD_REQUEST, detail=str(exc)) from exc
    except OSError as exc:
        logger.error("Error uploading background: %s", exc)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Failed to upload background",
        ) from exc

    return BackgroundUploadResult(
        filename=filename,
        message=f"{payload.type} background uploaded successfully",
    )


@router.get(
    "",
    response_model=BackgroundConfigResult,
    response_model_by_alias=True,
    summary="Current background configuration",
)
def get_backgrounds(
    backgrounds: BackgroundStore = Depends(get_background_store),
) -> BackgroundConfigResult:
    try:
        config = backgrounds.read_config()
    except (OSError, ValueError) as exc:
        logger.error("Error getting backgrounds: %s", exc)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Failed to get backgrounds",
        ) from exc
    return BackgroundConfigResult(backgrounds=BackgroundConfig.model_validate(config))


@router.get(
    "/{filename}",
    response_class=FileResponse,
    summary="Download a background image",
    responses={404: {"description": "No stored image has this name."}},
)
def get_background_file(
    filename: str = Path(..., description="Stored image filename."),
    backgrounds: BackgroundStore = Depends(get_background_store),
) -> FileResponse:
    path = backgrounds.path_for(filename)
    if path is None:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail="Background file not found")
    return FileResponse(path)


@router.delete(
    "/{background_type}",
    response_model=BackgroundResetResult,
    summary="Reset a background slot",
    responses={400: {"description": "Unknown slot."}},
)
def reset_background(
    background_type: str = Path(..., description="`main` or `schedule`."),
    backgrounds: BackgroundStore = Depends(get_background_store),
) -> BackgroundResetResult:
    try:
        backgrounds.reset(background_type)
    except BackgroundError as exc:
        raise HTTPException(status_code=HTTPStatus.BAD_REQUEST, detail=str(exc)) from exc
    except OSError as exc:
        logger.error("Error resetting background: %s", exc)
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Failed to reset background",
        ) from exc

    return BackgroundResetResult(message=f"{background_type} background reset successfully")
