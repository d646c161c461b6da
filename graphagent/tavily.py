from typing import Any, Dict, List, Optional

import httpx


class TavilyClient:
    """Web search and page extraction used by the ``web_search`` and ``website_extract`` tools.

    Failures come back as ``{"error": ...}`` dicts so the calling tool can report them to the
    model instead of aborting the run.
    """

    def __init__(self, api_key: Optional[str], base_url: str = "https://api.tavily.com"):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, max_results: int = 5, search_depth: str = "basic") -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload = {"query": query, "search_depth": search_depth, "max_results": max_results}
        data = await self._post("/search", payload)
        if "error" in data:
            return data
        results: List[Dict[str, Any]] = []
        for item in data.get("results") or []:
            if not isinstance(item, dict):
                continue
            results.append(
                {
                    "title": item.get("title") or "",
                    "url": item.get("url") or "",
                    "content": item.get("content") or "",
                }
            )
        return {"query": query, "results": results}

    async def extract(self, url: str, extract_depth: str = "basic") -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        data = await self._post("/extract", {"urls": [url], "extract_depth": extract_depth})
        if "error" in data:
            return data
        for item in data.get("results") or []:
            if isinstance(item, dict) and item.get("raw_content"):
                return {"url": item.get("url") or url, "title": item.get("title") or url, "content": item["raw_content"]}
        failed = data.get("failed_results") or []
        return {"error": "extract_failed", "detail": failed[0] if failed else "no content returned"}

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}
        try:
            resp = await self.client.post(f"{self.base_url}{path}", json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
