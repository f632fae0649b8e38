import fakeredis
import pytest

from DonationChat.chat_db.session_cache import SessionStores


# ─── Fakeredis fixtures (no Docker) ───

@pytest.fixture
def fake_cache_client():
    r = fakeredis.FakeRedis(decode_responses=True)
    yield r
    r.flushdb()
    r.close()


@pytest.fixture
def session_stores(fake_cache_client):
    return SessionStores(fake_cache_client, session_id="test-session")
