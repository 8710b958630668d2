"""
User-data helper routes.

Endpoints:
- POST /api/v1/userdata/validate - Check a user-data document
- POST /api/v1/userdata/preview - Render a config mapping as #cloud-config
"""
from fastapi import APIRouter, HTTPException

from autoinstaller.core.userdata import UserDataError, render_user_data, validate_user_data
from autoinstaller.schemas.build import (
    UserDataPreviewRequest,
    UserDataPreviewResponse,
    UserDataRequest,
    UserDataValidationResponse,
)

router = APIRouter(prefix="/api/v1/userdata", tags=["userdata"])


@router.post("/validate", response_model=UserDataValidationResponse)
async def validate(request: UserDataRequest) -> UserDataValidationResponse:
    """
    Validate user-data YAML.

    Always 200; `valid` is false and `error` explains why when the document
    is not YAML or lacks the `autoinstall` section.
    """
    try:
        validate_user_data(request.user_data)
    except UserDataError as e:
        return UserDataValidationResponse(valid=False, error=str(e))
    return UserDataValidationResponse(valid=True)


@router.post("/preview", response_model=UserDataPreviewResponse)
async def preview(request: UserDataPreviewRequest) -> UserDataPreviewResponse:
    """Render a config as the user-data file a build would embed. 400 if invalid."""
    try:
        content = render_user_data(request.config)
    except UserDataError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return UserDataPreviewResponse(user_data=content)
