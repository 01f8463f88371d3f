import json
import re
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx

from .config import AppSettings, EndpointConfig, ModelRouting
from .context import RunContext


ALLOWED_ROLES = {"system", "user", "assistant"}
_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


class ReasoningServiceError(RuntimeError):
    """A reasoning-service call failed at the transport or HTTP level."""


class ReasoningService(Protocol):
    async def complete(
        self,
        role: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        ctx: Optional[RunContext] = None,
    ) -> str: ...

    def stream(
        self,
        role: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]: ...


def parse_json_object(raw: str) -> Optional[dict]:
    """Parse a model reply that should be a JSON object, tolerating code fences and chatter."""
    text = (raw or "").strip()
    if not text:
        return None
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            parsed = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


class ReasoningClient:
    """OpenAI-compatible chat client with an explicit role -> model routing table."""

    def __init__(
        self,
        routing: ModelRouting,
        max_output_tokens: Optional[int] = None,
        default_max_tokens: int = 4096,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 60.0,
    ):
        self.routing = routing
        self.max_output_tokens = max_output_tokens
        self.default_max_tokens = default_max_tokens
        self.extra_headers = dict(headers or {})
        self.client = httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "ReasoningClient":
        return cls(
            settings.routing,
            max_output_tokens=settings.max_output_tokens,
            default_max_tokens=settings.limits.max_tokens,
            headers={"HTTP-Referer": settings.http_referer, "X-Title": settings.app_title},
            timeout=settings.limits.step_timeout_s,
        )

    def _headers(self, endpoint: EndpointConfig) -> Dict[str, str]:
        headers = dict(self.extra_headers)
        if endpoint.api_key:
            headers["Authorization"] = f"Bearer {endpoint.api_key}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if content is None:
                continue
            if not isinstance(content, str):
                content = json.dumps(content, ensure_ascii=True)
            if not content.strip():
                continue
            sanitized.append({"role": role, "content": content})
        return sanitized

    def _normalize_error_text(self, detail: str) -> str:
        text = detail or ""
        for _ in range(2):
            try:
                parsed = json.loads(text)
            except (json.JSONDecodeError, TypeError):
                break
            if isinstance(parsed, dict):
                found = False
                for key in ("error", "detail", "message"):
                    val = parsed.get(key)
                    if isinstance(val, str) and val.strip():
                        text = val
                        found = True
                        break
                    if isinstance(val, dict):
                        text = json.dumps(val)
                        found = True
                        break
                if not found:
                    break
            elif isinstance(parsed, str):
                text = parsed
            else:
                break
        return text

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return self._normalize_error_text(json.dumps(data, ensure_ascii=True))
        except (json.JSONDecodeError, UnicodeDecodeError, httpx.ResponseNotRead):
            pass
        try:
            return response.text
        except httpx.ResponseNotRead:
            return ""

    def _build_payload(
        self,
        role: str,
        messages: List[Dict[str, Any]],
        temperature: float,
        max_tokens: Optional[int],
        stream: bool,
    ) -> Dict[str, Any]:
        endpoint = self.routing.endpoint(role)
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        final_max_tokens = max_tokens or self.default_max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(final_max_tokens, self.max_output_tokens)
        return {
            "model": endpoint.model_id,
            "messages": cleaned,
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": stream,
        }

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            raise ReasoningServiceError(
                f"Failed to call {payload.get('model')}: HTTP {exc.response.status_code} {detail}"
            ) from exc
        except httpx.RequestError as exc:
            raise ReasoningServiceError(f"Failed to call {payload.get('model')}: {exc}") from exc
        try:
            return resp.json()
        except json.JSONDecodeError as exc:
            raise ReasoningServiceError(f"Failed to call {payload.get('model')}: invalid JSON body") from exc

    async def complete(
        self,
        role: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        ctx: Optional[RunContext] = None,
    ) -> str:
        endpoint = self.routing.endpoint(role)
        payload = self._build_payload(role, messages, temperature, max_tokens, stream=False)
        url = f"{endpoint.base_url.rstrip('/')}/chat/completions"
        call = self._post(url, payload, self._headers(endpoint))
        data = await (ctx.guard(call) if ctx else call)
        if ctx is not None:
            usage = data.get("usage") if isinstance(data, dict) else None
            if isinstance(usage, dict):
                ctx.add_tokens(usage.get("total_tokens"))
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content")
        if content is None or content == "":
            # Reasoning models sometimes leave content empty and put the answer here.
            content = message.get("reasoning") or message.get("reasoning_content") or ""
        return str(content)

    async def stream(
        self,
        role: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        endpoint = self.routing.endpoint(role)
        payload = self._build_payload(role, messages, temperature, max_tokens, stream=True)
        url = f"{endpoint.base_url.rstrip('/')}/chat/completions"
        try:
            async with self.client.stream("POST", url, json=payload, headers=self._headers(endpoint)) as response:
                if response.status_code >= 400:
                    await response.aread()
                    detail = self._extract_error_detail(response)
                    raise ReasoningServiceError(
                        f"Failed to stream {payload['model']}: HTTP {response.status_code} {detail}"
                    )
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:") :].strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except json.JSONDecodeError:
                        continue
                    choices = data.get("choices") or [{}]
                    delta = (choices[0] or {}).get("delta") or {}
                    content = delta.get("content")
                    if content:
                        yield content
        except httpx.RequestError as exc:
            raise ReasoningServiceError(f"Failed to stream {payload['model']}: {exc}") from exc

    async def close(self) -> None:
        await self.client.aclose()
