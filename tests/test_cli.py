import pytest
from shellmate import cli


@pytest.mark.parametrize("text, expected", [
    ("hello world", True),
    ("  find large files  ", True),
    ("", False),
    ("   ", False),
    ("/help", False),
    ("/stats", False),
    ("exit", False),
    ("EXIT", False),
])
def test_should_add_to_history(text, expected):
    assert cli._should_add_to_history(text) == expected


@pytest.mark.parametrize("cfg, expected", [
    ({"model": "gpt-4o", "api_base": "https://api.openai.com/v1/chat/completions"}, True),
    ({"model": "gpt-4o", "api_base": "https://x", "api_key": None}, True),
    ({"model": None, "api_base": "https://x"}, False),
    ({"model": "gpt-4o", "api_base": ""}, False),
    ({}, False),
])
def test_is_config_valid(cfg, expected):
    assert cli.is_config_valid(cfg) == expected


def test_update_session_stats(mocker):
    mocker.patch.object(cli.litellm, "model_cost", {
        "gpt-4o": {"input_cost_per_token": 0.001, "output_cost_per_token": 0.002},
    })
    stats = {"prompt_tokens": 0, "completion_tokens": 0, "cost": 0.0}

    cli._update_session_stats(100, 10, stats, "openai/gpt-4o")
    cli._update_session_stats(50, 5, stats, "gpt-4o")

    assert stats["prompt_tokens"] == 150
    assert stats["completion_tokens"] == 15
    assert stats["cost"] == pytest.approx(150 * 0.001 + 15 * 0.002)


def test_update_session_stats_unknown_model(mocker):
    mocker.patch.object(cli.litellm, "model_cost", {})
    stats = {"prompt_tokens": 0, "completion_tokens": 0, "cost": 0.0}

    cli._update_session_stats(7, 3, stats, "local/mystery")

    assert stats == {"prompt_tokens": 7, "completion_tokens": 3, "cost": 0.0}


def test_history_filters_commands():
    history = cli._ChatHistory()

    for entry in ["/help", "list files", "exit", "show disk usage"]:
        history.append_string(entry)

    assert list(history.get_strings()) == ["list files", "show disk usage"]
