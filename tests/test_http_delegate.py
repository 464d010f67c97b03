from __future__ import annotations

import json

import httpx
import pytest

from code_credits.execution.delegate import HttpExecutionDelegate


def _delegate(handler) -> HttpExecutionDelegate:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpExecutionDelegate("http://gateway:8080/", client=client)


@pytest.mark.asyncio
async def test_posts_to_language_runner():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"result": "42\n", "error": ""})

    result = await _delegate(handler).run("Python", "print(42)", "", request_id="exec-1")

    assert seen["url"] == "http://gateway:8080/function/python3-runner"
    assert seen["body"] == {"code": "print(42)", "inputs": "", "requestId": "exec-1"}
    assert result.output == "42\n"
    assert not result.failed


@pytest.mark.asyncio
async def test_runner_error_field_marks_failure():
    def handler(request):
        return httpx.Response(200, json={"output": "", "error": "NameError: x"})

    result = await _delegate(handler).run("javascript", "x")

    assert result.failed
    assert result.error == "NameError: x"


@pytest.mark.asyncio
async def test_http_error_status_uses_body():
    def handler(request):
        return httpx.Response(502, text="compile failed")

    result = await _delegate(handler).run("cpp", "int main(")

    assert result.error == "compile failed"


@pytest.mark.asyncio
async def test_unreachable_gateway():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await _delegate(handler).run("java", "class A {}")

    assert result.error == "No response received from the execution service"


@pytest.mark.asyncio
async def test_gateway_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    result = await _delegate(handler).run("c", "int main(){}")

    assert result.error == "Execution timed out"


@pytest.mark.asyncio
async def test_plain_text_response_is_output():
    def handler(request):
        return httpx.Response(200, text="hello")

    result = await _delegate(handler).run("python", "print('hello')")

    assert result.output == "hello"
    assert result.error is None


@pytest.mark.asyncio
async def test_unknown_language_does_not_call_gateway():
    def handler(request):
        raise AssertionError("gateway should not be called")

    delegate = _delegate(handler)
    result = await delegate.run("cobol", "DISPLAY 'HI'.")

    assert result.failed
    assert not delegate.supports("cobol")
    assert delegate.supports("PYTHON")
