import logging
import re
from typing import Awaitable, Callable, Dict, Any, List, Optional

import httpx
from bs4 import BeautifulSoup, Comment

from exgpt_core.config.settings import settings
from exgpt_core.infrastructure.logging.logger import log_event
from .definitions import ToolCall, ToolResult, ToolDef, ToolParam


ToolFunc = Callable[[Dict[str, Any]], Awaitable[str]]
CredentialProvider = Callable[[], Awaitable[str]]

TRUNCATION_MARKER = "\n\n[Output truncated]"
WOLFRAM_LLM_API = "https://www.wolframalpha.com/api/v1/llm-api"
USER_AGENT = "ExGPT/1.0 (+desktop chat client)"

_WS_RE = re.compile(r"\s+")


def truncate_output(text: str, limit: Optional[int] = None) -> str:
    max_chars = settings.tool_output_limit if limit is None else limit
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


class ToolExecutor:
    """按名称执行工具。

    ``run`` 永远不会抛出异常：未知工具、参数错误、网络错误、缺少凭据等
    都转换为描述性文本返回给模型；输出按 tool_output_limit 截断。
    """

    def __init__(self, tools: Dict[str, ToolFunc], output_limit: Optional[int] = None):
        self._tools = tools
        self._output_limit = output_limit

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    async def run(self, name: str, arguments: Any) -> str:
        func = self._tools.get(name)
        if not func:
            result = f"Error: tool '{name}' is not registered"
        elif not isinstance(arguments, dict):
            result = f"Error: input for tool '{name}' must be an object"
        else:
            try:
                result = await func(arguments)
            except Exception as exc:
                log_event(logging.WARNING, "tool_failed", {"tool": name}, error=str(exc))
                result = f"Error: {name} failed: {exc}"
        return truncate_output(result, self._output_limit)

    async def execute(self, call: ToolCall) -> ToolResult:
        content = await self.run(call.name, call.arguments)
        return ToolResult(call_id=call.id, content=content)


def html_to_text(document: str) -> str:
    """去掉 script/style/noscript 与注释，取出可读文本并压缩空白。"""

    soup = BeautifulSoup(document, "html.parser")
    for tag in soup.find_all(["script", "style", "noscript"]):
        tag.decompose()
    for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
        comment.extract()
    return _WS_RE.sub(" ", soup.get_text(" ")).strip()


def _make_web_fetch_tool(timeout: float) -> ToolFunc:
    async def _run(args: Dict[str, Any]) -> str:
        url = str(args.get("url") or "").strip()
        if not url:
            return "Error: url is required"
        if not url.lower().startswith(("http://", "https://")):
            return f"Error: only http and https URLs can be fetched: {url}"
        try:
            async with httpx.AsyncClient(
                timeout=timeout, follow_redirects=True, trust_env=False
            ) as client:
                resp = await client.get(url, headers={"User-Agent": USER_AGENT})
        except httpx.RequestError as exc:
            return f"Error: could not fetch {url}: {exc}"
        if resp.status_code >= 400:
            return f"Error: {url} returned HTTP {resp.status_code}"
        content_type = resp.headers.get("content-type", "")
        body = resp.text
        if "html" in content_type.lower() or body.lstrip().lower().startswith(("<!doctype html", "<html")):
            body = html_to_text(body)
        return f"Content from {resp.url}:\n\n{body}"

    return _run


def _make_wolfram_tool(credentials: CredentialProvider, timeout: float) -> ToolFunc:
    async def _run(args: Dict[str, Any]) -> str:
        query = str(args.get("query") or "").strip()
        if not query:
            return "Error: query is required"
        app_id = await credentials()
        if not app_id:
            return (
                "Wolfram Alpha is not configured: no App ID is set. "
                "Tell the user to add a Wolfram Alpha App ID in Settings "
                "(a value like $WOLFRAM_APP_ID reads it from the environment)."
            )
        try:
            async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
                resp = await client.get(WOLFRAM_LLM_API, params={"input": query, "appid": app_id})
        except httpx.RequestError as exc:
            return f"Error: Wolfram Alpha request failed: {exc}"
        if resp.status_code == 501:
            return f"Wolfram Alpha could not interpret the query: {query}"
        if resp.status_code >= 400:
            return f"Error: Wolfram Alpha returned HTTP {resp.status_code}: {resp.text}"
        return resp.text

    return _run


async def _no_credentials() -> str:
    return ""


def default_tools(
    wolfram_credentials: Optional[CredentialProvider] = None,
    timeout: Optional[float] = None,
) -> Dict[str, ToolFunc]:
    http_timeout = settings.http_timeout if timeout is None else timeout
    return {
        "web_fetch": _make_web_fetch_tool(http_timeout),
        "wolfram_alpha": _make_wolfram_tool(wolfram_credentials or _no_credentials, http_timeout),
    }


def default_tool_defs() -> List[ToolDef]:
    return [
        ToolDef(
            name="web_fetch",
            description=(
                "Fetch a web page over HTTP(S) and return its readable text content. "
                "HTML markup, scripts and styles are removed."
            ),
            params={
                "url": ToolParam(
                    name="url",
                    description="Absolute http:// or https:// URL to fetch",
                    required=True,
                    schema={"type": "string"},
                )
            },
            toggle="webfetch",
        ),
        ToolDef(
            name="wolfram_alpha",
            description=(
                "Ask Wolfram Alpha a computational or factual question, e.g. math, unit "
                "conversion, scientific data, dates. Returns a plain-text answer."
            ),
            params={
                "query": ToolParam(
                    name="query",
                    description="Natural-language query, e.g. 'integrate x^2 sin x dx'",
                    required=True,
                    schema={"type": "string"},
                )
            },
            toggle="wolfram",
        ),
    ]
