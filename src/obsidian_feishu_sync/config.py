from typing import Optional

from pydantic import AnyHttpUrl, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Feishu / Lark open platform credentials
    feishu_app_id: str = ""
    feishu_app_secret: SecretStr = SecretStr("")
    feishu_base_url: AnyHttpUrl = "https://open.feishu.cn/open-apis"

    # Target drive folder for newly created documents
    feishu_folder_token: str = ""

    # Optional user that receives ownership after upload
    feishu_user_id: Optional[str] = None

    vault_root: str = "."
    history_path: str = "./data/upload_history.json"

    enable_double_link_mode: bool = True
    enable_smart_update: bool = True
    debug_logging: bool = False

    request_timeout: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"
    )

settings = Settings()
