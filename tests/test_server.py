from agency_sms import __main__ as server


def test_main_serves_the_app_with_env_defaults(monkeypatch):
    calls = []
    monkeypatch.setattr(server.uvicorn, "run", lambda app, **kw: calls.append((app, kw)))
    monkeypatch.setenv("HOST", "127.0.0.1")
    monkeypatch.setenv("PORT", "9123")

    server.main([])

    assert calls == [("agency_sms.main:app", {"host": "127.0.0.1", "port": 9123, "reload": False})]


def test_cli_flags_override_env(monkeypatch):
    calls = []
    monkeypatch.setattr(server.uvicorn, "run", lambda app, **kw: calls.append(kw))
    monkeypatch.setenv("PORT", "9123")

    server.main(["--port", "8081", "--reload"])

    assert calls[0]["port"] == 8081
    assert calls[0]["reload"] is True
