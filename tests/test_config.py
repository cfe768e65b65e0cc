import json

from marketchat.config import MessagingConfig, SupabaseSettings, load_settings


def test_defaults_match_paging_and_typing_constants():
    config = MessagingConfig()

    assert config.initial_page_size == 50
    assert config.page_size == 20
    assert config.typing_timeout_s == 5.0


def test_settings_from_env():
    settings = SupabaseSettings.from_env(
        {
            "SUPABASE_URL": "https://abc.supabase.co",
            "SUPABASE_ANON_KEY": "anon",
            "MARKETCHAT_USER_ID": "u1",
        }
    )

    assert settings.url == "https://abc.supabase.co"
    assert settings.anon_key == "anon"
    assert settings.user_id == "u1"
    assert settings.access_token is None


def test_urls_are_derived_from_project_url():
    secure = SupabaseSettings(url="https://abc.supabase.co/", anon_key="k")
    local = SupabaseSettings(url="http://127.0.0.1:54321", anon_key="k")

    assert secure.rest_url == "https://abc.supabase.co/rest/v1"
    assert secure.realtime_url == "wss://abc.supabase.co/realtime/v1/websocket"
    assert local.realtime_url == "ws://127.0.0.1:54321/realtime/v1/websocket"


def test_auth_headers_prefer_access_token():
    anonymous = SupabaseSettings(url="http://x", anon_key="anon")
    signed_in = SupabaseSettings(url="http://x", anon_key="anon", access_token="jwt")

    assert anonymous.auth_headers() == {"apikey": "anon", "Authorization": "Bearer anon"}
    assert signed_in.auth_headers()["Authorization"] == "Bearer jwt"


def test_merged_ignores_empty_overrides():
    settings = SupabaseSettings(url="http://x", anon_key="anon", user_id="u1")

    merged = settings.merged(url=None, anon_key="", user_id="u2", unknown="ignored")

    assert merged.url == "http://x"
    assert merged.anon_key == "anon"
    assert merged.user_id == "u2"


def test_settings_file_round_trip(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"url": "http://x", "anon_key": "anon", "extra": 1}), encoding="utf-8")

    settings = SupabaseSettings.from_file(path)

    assert settings.url == "http://x"
    assert settings.anon_key == "anon"


def test_missing_or_malformed_settings_are_empty(tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    assert load_settings(tmp_path / "missing.json") == {}
    assert load_settings(broken) == {}
