"""Unit tests for the OAuth redirect listener.

Each test binds a real loopback port and drives it with httpx in the same
event loop.
"""

import asyncio
import socket

import httpx
import pytest

from agswitch.errors import OAuthCallbackError, OAuthTimeout
from agswitch.web.callback import CallbackListener, ListenerState


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.new_event_loop().run_until_complete(coro)


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def listener():
    return CallbackListener(port=_free_port(), timeout=5)


def _url(listener: CallbackListener, query: str = "", path: str = None) -> str:
    return f"http://127.0.0.1:{listener.port}{path or listener.path}{query}"


async def _drive(listener, *requests):
    """Start the listener, issue requests in order, then wait for the outcome."""
    await listener.start()
    responses = []
    async with httpx.AsyncClient(trust_env=False) as client:
        for url in requests:
            responses.append(await client.get(url))
    try:
        outcome = await listener.wait()
    except Exception as e:
        outcome = e
    return responses, outcome


def test_code_is_returned_and_decoded(listener):
    responses, outcome = _run(_drive(listener, _url(listener, "?code=4%2F0Ab+cd&scope=email")))
    assert outcome == "4/0Ab cd"
    assert responses[0].status_code == 200
    assert "Login successful" in responses[0].text
    assert listener.state is ListenerState.SUCCEEDED


def test_error_param_fails_with_400(listener):
    responses, outcome = _run(_drive(listener, _url(listener, "?error=access_denied")))
    assert isinstance(outcome, OAuthCallbackError)
    assert "access_denied" in str(outcome)
    assert responses[0].status_code == 400
    assert "access_denied" in responses[0].text
    assert listener.state is ListenerState.FAILED


def test_error_text_is_escaped(listener):
    responses, _ = _run(_drive(listener, _url(listener, "?error=%3Cscript%3E")))
    assert "<script>" not in responses[0].text
    assert "&lt;script&gt;" in responses[0].text


def test_unrelated_requests_get_404_and_keep_listening(listener):
    responses, outcome = _run(_drive(
        listener,
        _url(listener, path="/favicon.ico"),
        _url(listener, "?state=only"),
        _url(listener, "?code=abc"),
    ))
    assert [r.status_code for r in responses] == [404, 404, 200]
    assert outcome == "abc"


def test_non_get_and_unknown_paths_get_html_404(listener):
    async def _go():
        await listener.start()
        async with httpx.AsyncClient(trust_env=False) as client:
            posted = await client.post(_url(listener, "?code=sneaky"))
            other = await client.get(_url(listener, path="/elsewhere"))
            real = await client.get(_url(listener, "?code=abc"))
        return posted, other, real, await listener.wait()

    posted, other, real, outcome = _run(_go())
    for resp in (posted, other):
        assert resp.status_code == 404
        assert resp.headers["content-type"].startswith("text/html")
        assert "Not found" in resp.text
    assert real.status_code == 200
    assert outcome == "abc"


def test_timeout():
    listener = CallbackListener(port=_free_port(), timeout=0.1)

    async def _go():
        await listener.start()
        await listener.wait()

    with pytest.raises(OAuthTimeout):
        _run(_go())
    assert listener.state is ListenerState.TIMED_OUT


def test_port_is_released_after_completion(listener):
    _run(_drive(listener, _url(listener, "?code=abc")))
    with socket.socket() as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind(("127.0.0.1", listener.port))


def test_listener_is_single_use(listener):
    _run(_drive(listener, _url(listener, "?code=abc")))
    with pytest.raises(RuntimeError):
        _run(listener.start())


def test_port_in_use_raises_oserror():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port = s.getsockname()[1]
        with pytest.raises(OSError):
            _run(CallbackListener(port=port).start())
