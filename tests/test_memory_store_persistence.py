from datetime import datetime, timezone

from llmhub.storage.memory import MemoryStore
from llmhub.storage.models import TokenPurpose


def test_memory_store_persists_users_and_tokens(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("Persist", "persist@example.com", "hash", "argon2id")
    store.mark_email_verified("persist@example.com")
    issued_at = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    store.upsert_token("persist@example.com", TokenPurpose.FORGOT_PASSWORD, "tok", issued_at)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user
    assert reloaded_user.name == "Persist"
    assert reloaded_user.email_verified is True

    record = reloaded.get_token_by_value("tok", TokenPurpose.FORGOT_PASSWORD)
    assert record
    assert record.email == "persist@example.com"
    assert record.updated_at == issued_at


def test_consumed_token_stays_consumed_after_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("Ann", "a@x.com", "hash")
    store.upsert_token("a@x.com", TokenPurpose.EMAIL_VERIFY, "tok")
    store.consume_token("tok", TokenPurpose.EMAIL_VERIFY)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_token_for_email("a@x.com", TokenPurpose.EMAIL_VERIFY) is None


def test_state_file_location(tmp_path):
    MemoryStore(fs_root=str(tmp_path))
    assert (tmp_path / "state" / "memory_store.json").exists()
