import pytest

from mediaservices.socket.cli import build_https_config, main


def test_https_config_address_and_limits():
    config = build_https_config()
    assert config.addr == "127.0.0.1"
    assert config.port == 8080
    assert config.keep_hosting is True
    assert config.public_rate_limit == 60
    assert config.internal_rate_limit == 300
    assert config.burst_size == 10
    assert config.max_age == 86400


def test_https_config_cors():
    config = build_https_config()
    assert config.allowed_origins == ["*"]
    assert config.allowed_methods == ["GET"]
    assert "X-Internal-API-Key" in config.allowed_headers
    assert config.exposed_headers == [
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ]
    assert config.allow_wildcard is True
    assert config.strict_mode is False
    assert config.log_violations is True


def test_https_config_is_fresh_each_call():
    first = build_https_config()
    first.allowed_methods.append("POST")
    assert build_https_config().allowed_methods == ["GET"]


def test_main_help_exits_cleanly(capsys):
    with pytest.raises(SystemExit) as info:
        main(["--help"])
    assert info.value.code == 0
    assert "mediaservices-socket" in capsys.readouterr().out


def test_main_rejects_unknown_option():
    with pytest.raises(SystemExit) as info:
        main(["--unknown"])
    assert info.value.code == 2