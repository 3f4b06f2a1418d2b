from unittest.mock import MagicMock, patch

import httpx
import pytest

from asa_manager.services.curseforge_service import CurseForgeError, CurseForgeService


def response(status_code=200, payload=None, text=""):
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = payload
    mock.text = text
    return mock


class TestCurseForgeService:
    def test_get_mod(self):
        payload = {
            "data": {
                "id": 928102,
                "name": "Structures Plus",
                "summary": "Building QoL",
                "downloadCount": 1200,
                "links": {"websiteUrl": "https://www.curseforge.com/ark-survival-ascended/mods/s-plus"},
            }
        }
        service = CurseForgeService(api_key="key", base_url="https://cf.test/v1/")
        with patch("httpx.get", return_value=response(payload=payload)) as mock_get:
            mod = service.get_mod(928102)

        assert mod.name == "Structures Plus"
        assert mod.download_count == 1200
        assert mod.website_url.endswith("s-plus")
        args, kwargs = mock_get.call_args
        assert args[0] == "https://cf.test/v1/mods/928102"
        assert kwargs["headers"]["x-api-key"] == "key"

    def test_missing_api_key(self):
        service = CurseForgeService(api_key="", base_url="https://cf.test/v1")
        service.api_key = None
        with pytest.raises(CurseForgeError) as exc_info:
            service.get_mod(1)
        assert exc_info.value.status_code == 503

    def test_not_found(self):
        service = CurseForgeService(api_key="key", base_url="https://cf.test/v1")
        with patch("httpx.get", return_value=response(status_code=404)):
            with pytest.raises(CurseForgeError) as exc_info:
                service.get_mod(5)
        assert exc_info.value.status_code == 404

    def test_upstream_error(self):
        service = CurseForgeService(api_key="key", base_url="https://cf.test/v1")
        with patch("httpx.get", return_value=response(status_code=403, text="forbidden")):
            with pytest.raises(CurseForgeError) as exc_info:
                service.get_mod(5)
        assert exc_info.value.status_code == 403

    def test_network_error(self):
        service = CurseForgeService(api_key="key", base_url="https://cf.test/v1")
        with patch("httpx.get", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(CurseForgeError) as exc_info:
                service.get_mod(5)
        assert exc_info.value.status_code == 502

    def test_empty_payload(self):
        service = CurseForgeService(api_key="key", base_url="https://cf.test/v1")
        with patch("httpx.get", return_value=response(payload={"data": None})):
            with pytest.raises(CurseForgeError):
                service.get_mod(5)
