from fastapi import APIRouter

from ..config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    return {
        "status": "ok",
        "feishu_api": str(settings.feishu_base_url),
        "folder_configured": bool(settings.feishu_folder_token),
    }
