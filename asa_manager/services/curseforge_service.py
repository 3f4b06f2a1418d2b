from typing import Any, Optional

import httpx

from ..config import settings
from ..models import CurseForgeMod


class CurseForgeError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class CurseForgeService:
    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None) -> None:
        self.api_key = api_key or settings.curseforge_api_key
        self.base_url = (base_url or settings.curseforge_base_url).rstrip("/")
        self.timeout = httpx.Timeout(20.0)

    def get_mod(self, mod_id: int) -> CurseForgeMod:
        data = self._get(f"/mods/{mod_id}", {})
        mod = data.get("data") if isinstance(data, dict) else None
        if not isinstance(mod, dict):
            raise CurseForgeError(502, f"CurseForge returned no data for mod {mod_id}")
        links = mod.get("links") or {}
        return CurseForgeMod(
            id=int(mod.get("id", mod_id)),
            name=str(mod.get("name") or mod_id),
            summary=str(mod.get("summary") or ""),
            download_count=mod.get("downloadCount"),
            website_url=links.get("websiteUrl") if isinstance(links, dict) else None,
        )

    def _get(self, path: str, params: dict[str, str]) -> Any:
        if not self.api_key:
            raise CurseForgeError(503, "CURSEFORGE_API_KEY is not configured")
        url = f"{self.base_url}{path}"
        try:
            response = httpx.get(
                url,
                params=params,
                headers={"x-api-key": self.api_key, "Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.RequestError as exc:
            raise CurseForgeError(502, f"CurseForge request failed: {exc}") from exc

        if response.status_code == 404:
            raise CurseForgeError(404, f"CurseForge mod not found: {path.rsplit('/', 1)[-1]}")
        if response.status_code >= 400:
            raise CurseForgeError(
                response.status_code,
                f"CurseForge error {response.status_code}: {response.text}",
            )
        return response.json()
