from functools import lru_cache

from ..feishu.api_client import FeishuClient
from ..history.store import UploadHistoryStore, history_store
from ..sync.pipeline import PipelineContext, SyncPipeline
from ..vault import Vault


@lru_cache
def get_feishu_client() -> FeishuClient:
    return FeishuClient()


@lru_cache
def get_vault() -> Vault:
    return Vault()


def get_history_store() -> UploadHistoryStore:
    return history_store


def get_pipeline() -> SyncPipeline:
    # A fresh context per request keeps image caches from leaking between runs
    return SyncPipeline(
        get_feishu_client(),
        get_vault(),
        get_history_store(),
        PipelineContext(),
    )
