from obsidian_feishu_sync.core.errors import (
    AuthenticationError,
    BusinessRejectionError,
    ConversionError,
    FolderConfigError,
    ImportTimeoutError,
    SmartUpdateError,
    SyncError,
    TransientRemoteError,
    classify_error,
)


class TestClassifyError:
    def test_import_timeout_is_partial_success(self):
        outcome = classify_error(ImportTimeoutError("ticket still running"))
        assert outcome.category == "timeout"
        assert outcome.is_partial_success

    def test_transient_is_network(self):
        outcome = classify_error(TransientRemoteError("503 after retries", status_code=503))
        assert outcome.category == "network"
        assert not outcome.is_partial_success

    def test_authentication(self):
        assert classify_error(AuthenticationError(99991663, "invalid app")).category == "auth"

    def test_folder_config(self):
        assert classify_error(FolderConfigError("no folder")).category == "folder-config"

    def test_smart_update_uses_summary(self):
        outcome = classify_error(SmartUpdateError("rebuild broke", "rebuilding"))
        assert outcome.category == "generic"
        assert outcome.message == "Smart update failed: rebuild broke"

    def test_unknown_keeps_message(self):
        """Anything unrecognized is generic and carries its own text."""
        outcome = classify_error(ValueError("odd input"))
        assert outcome.category == "generic"
        assert "odd input" in outcome.message

    def test_business_rejection_is_generic(self):
        outcome = classify_error(BusinessRejectionError(1770001, "bad block", "create blocks"))
        assert outcome.category == "generic"
        assert "create blocks failed: bad block (code=1770001)" in outcome.message


class TestHierarchy:
    def test_all_errors_share_base(self):
        for exc_type in (TransientRemoteError, BusinessRejectionError, ImportTimeoutError, ConversionError):
            assert issubclass(exc_type, SyncError)
        assert issubclass(SyncError, RuntimeError)

    def test_authentication_is_business_rejection(self):
        exc = AuthenticationError(10003, "bad secret")
        assert isinstance(exc, BusinessRejectionError)
        assert exc.code == 10003
