import uvicorn

from authcore.__main__ import main
from authcore.config import reset_settings_cache


class TestServerEntryPoint:
    def test_defaults_come_from_settings(self, monkeypatch):
        calls = []
        monkeypatch.setenv("BIND_HOST", "0.0.0.0")
        monkeypatch.setenv("BIND_PORT", "9100")
        reset_settings_cache()
        monkeypatch.setattr(uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))

        assert main([]) == 0
        target, kwargs = calls[0]
        assert target == "authcore.app:app"
        assert kwargs["host"] == "0.0.0.0"
        assert kwargs["port"] == 9100
        assert kwargs["reload"] is False

    def test_flags_override_settings(self, monkeypatch):
        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda target, **kwargs: calls.append(kwargs))

        assert main(["--host", "127.0.0.2", "--port", "8123", "--reload"]) == 0
        assert calls == [
            {
                "host": "127.0.0.2",
                "port": 8123,
                "reload": True,
                "proxy_headers": False,
                "access_log": False,
            }
        ]
