import asyncio

import pytest
import requests

from shellmate import transport
from shellmate.transport import ProviderError, RateLimitedTransport


def make_response(mocker, status, text="", headers=None, chunks=()):
    response = mocker.Mock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.text = text
    response.headers = headers or {}
    response.iter_content.return_value = iter(chunks)
    return response


def make_transport(mocker, responses, **kwargs):
    session = mocker.Mock()
    session.post.side_effect = responses
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    client = RateLimitedTransport("https://llm.test/v1/chat/completions", api_key="sk-test",
                                  session=session, sleep=fake_sleep, **kwargs)
    return client, session, sleeps


def test_rate_limit_is_waited_out_and_retried(mocker):
    limited = make_response(mocker, 429, text='{"error": "Please retry in 2.0s"}')
    ok = make_response(mocker, 200)
    client, session, sleeps = make_transport(mocker, [limited, ok])
    countdown = []

    response = asyncio.run(client.send({"model": "m"}, on_countdown=countdown.append))

    assert response is ok
    assert countdown == [2, 1]
    assert sleeps == [1, 1]
    assert session.post.call_count == 2
    limited.close.assert_called_once()
    # The identical request is sent again.
    first, second = session.post.call_args_list
    assert first == second


def test_countdown_callback_may_be_a_coroutine(mocker):
    client, _, _ = make_transport(mocker, [make_response(mocker, 429, text="retry in 1s"), make_response(mocker, 200)])
    seen = []

    async def on_countdown(seconds):
        seen.append(seconds)

    asyncio.run(client.send({}, on_countdown=on_countdown))

    assert seen == [1]


def test_fractional_hint_is_rounded_up(mocker):
    response = make_response(mocker, 429, text="Rate limited. Retry in 1.2s")

    assert transport.parse_retry_delay(response, default=5) == 2


def test_retry_after_header_is_used_without_a_hint(mocker):
    response = make_response(mocker, 429, text="slow down", headers={"Retry-After": "7"})

    assert transport.parse_retry_delay(response, default=5) == 7


def test_default_wait_without_any_hint(mocker):
    response = make_response(mocker, 429, text="slow down")

    assert transport.parse_retry_delay(response, default=5) == 5


def test_retries_are_bounded(mocker):
    responses = [make_response(mocker, 429, text="retry in 1s") for _ in range(3)]
    client, session, _ = make_transport(mocker, responses, max_retries=2)

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(client.send({}))

    assert excinfo.value.status == 429
    assert session.post.call_count == 3


def test_other_errors_are_not_retried(mocker):
    client, session, _ = make_transport(mocker, [make_response(mocker, 500, text="boom")])

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(client.send({}))

    assert excinfo.value.status == 500
    assert str(excinfo.value) == "API 500: boom"
    assert session.post.call_count == 1


def test_connection_errors_become_provider_errors(mocker):
    client, _, _ = make_transport(mocker, [requests.ConnectionError("refused")])

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(client.send({}))

    assert excinfo.value.status is None
    assert "refused" in str(excinfo.value)


def test_request_headers(mocker):
    client, session, _ = make_transport(mocker, [make_response(mocker, 200)])

    asyncio.run(client.send({"model": "m"}))

    kwargs = session.post.call_args.kwargs
    assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
    assert kwargs["json"] == {"model": "m"}
    assert kwargs["stream"] is True


def test_no_authorization_header_without_a_key(mocker):
    client = RateLimitedTransport("https://llm.test", session=mocker.Mock())

    assert "Authorization" not in client._headers()


def test_iter_chunks_yields_and_closes(mocker):
    client, _, _ = make_transport(mocker, [])
    response = make_response(mocker, 200, chunks=[b"data: 1\n", b"data: 2\n"])

    async def read():
        return [chunk async for chunk in client.iter_chunks(response)]

    assert asyncio.run(read()) == [b"data: 1\n", b"data: 2\n"]
    response.close.assert_called_once()
