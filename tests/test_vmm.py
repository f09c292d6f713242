"""Tests for the HTTP transport and the VM manager client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from validator_updater.errors import (
    NetworkError,
    RemoteError,
    RequestTimeout,
    Unreachable,
)
from validator_updater.models import VmStatus
from validator_updater.transport import request_json
from validator_updater.vmm import VmmClient

REQUEST = "validator_updater.transport.requests.request"


def _response(status=200, json_data=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    if isinstance(json_data, Exception):
        resp.json.side_effect = json_data
    else:
        resp.json.return_value = json_data
    return resp


class TestRequestJson:
    """Tests for mapping HTTP failures onto NetworkError."""

    @patch(REQUEST)
    def test_returns_json(self, mock_req):
        mock_req.return_value = _response(json_data={"ok": True})
        assert request_json("GET", "http://x/") == {"ok": True}
        mock_req.assert_called_once_with("GET", "http://x/", json=None, timeout=10, verify=False)

    @patch(REQUEST, side_effect=requests.exceptions.Timeout("slow"))
    def test_timeout(self, _):
        with pytest.raises(RequestTimeout):
            request_json("GET", "http://x/")

    @patch(REQUEST, side_effect=requests.exceptions.ConnectionError("refused"))
    def test_unreachable(self, _):
        with pytest.raises(Unreachable):
            request_json("GET", "http://x/")

    @patch(REQUEST, side_effect=requests.exceptions.InvalidURL("bad"))
    def test_other_request_error(self, _):
        with pytest.raises(NetworkError):
            request_json("GET", "http://x/")

    @patch(REQUEST)
    def test_error_status(self, mock_req):
        mock_req.return_value = _response(status=503, text="maintenance")
        with pytest.raises(RemoteError) as exc_info:
            request_json("GET", "http://x/")
        assert exc_info.value.status == 503
        assert exc_info.value.body == "maintenance"

    @patch(REQUEST)
    def test_invalid_json(self, mock_req):
        mock_req.return_value = _response(json_data=ValueError("no json"), text="<html>")
        with pytest.raises(RemoteError, match="Invalid JSON"):
            request_json("GET", "http://x/")


class TestVmmClient:
    """Tests for the pRPC wrappers."""

    @pytest.fixture
    def client(self):
        return VmmClient("http://localhost:10300/")

    @patch(REQUEST)
    def test_rpc_url_and_body(self, mock_req, client):
        mock_req.return_value = _response(json_data={"vms": []})
        client.list_vms()
        mock_req.assert_called_once_with(
            "POST", "http://localhost:10300/prpc/Status?json", json={}, timeout=10, verify=False,
        )

    @patch(REQUEST)
    def test_non_object_response(self, mock_req, client):
        mock_req.return_value = _response(json_data=[1, 2])
        with pytest.raises(RemoteError):
            client.rpc_call("Status")

    @patch(REQUEST)
    def test_list_vms(self, mock_req, client):
        mock_req.return_value = _response(json_data={"vms": [
            {"id": "vm-1", "name": "validator_vm", "status": "running", "appId": "ab" * 20},
            {"id": "vm-2", "name": "other", "status": "exited", "app_id": "cd" * 20},
            {"name": "no-id"},
        ]})
        vms = client.list_vms()
        assert [v.vm_id for v in vms] == ["vm-1", "vm-2"]
        assert vms[0].status == VmStatus.RUNNING
        assert vms[1].status == VmStatus.STOPPED
        assert vms[1].app_id == "cd" * 20

    @patch(REQUEST)
    def test_list_vms_missing_field(self, mock_req, client):
        mock_req.return_value = _response(json_data={})
        with pytest.raises(RemoteError):
            client.list_vms()

    @patch(REQUEST)
    def test_find_vm(self, mock_req, client):
        mock_req.return_value = _response(json_data={"vms": [
            {"id": "vm-1", "name": "validator_vm", "status": "running"},
        ]})
        assert client.find_vm("validator_vm").vm_id == "vm-1"
        assert client.find_vm("missing") is None

    @patch(REQUEST)
    def test_get_vm_not_found(self, mock_req, client):
        mock_req.return_value = _response(json_data={"found": False})
        assert client.get_vm("vm-1") is None
        assert client.get_vm_status("vm-1") == VmStatus.ABSENT

    @patch(REQUEST)
    def test_get_vm_status(self, mock_req, client):
        mock_req.return_value = _response(json_data={
            "found": True, "info": {"id": "vm-1", "status": "stopping"},
        })
        assert client.get_vm_status("vm-1") == VmStatus.STOPPING
        assert mock_req.call_args.kwargs["json"] == {"id": "vm-1"}

    @patch(REQUEST)
    def test_get_public_key(self, mock_req, client):
        mock_req.return_value = _response(json_data={"public_key": "ab" * 32})
        assert client.get_public_key("app") == "ab" * 32
        assert mock_req.call_args.args[1].endswith("/prpc/GetAppEnvEncryptPubKey?json")
        assert mock_req.call_args.kwargs["json"] == {"app_id": "app"}

    @patch(REQUEST)
    def test_get_public_key_missing(self, mock_req, client):
        mock_req.return_value = _response(json_data={})
        with pytest.raises(RemoteError):
            client.get_public_key("app")

    @patch(REQUEST)
    def test_create_vm(self, mock_req, client):
        mock_req.return_value = _response(json_data={"id": "vm-9"})
        assert client.create_vm({"name": "validator_vm"}) == "vm-9"

    @patch(REQUEST)
    def test_create_vm_missing_id(self, mock_req, client):
        mock_req.return_value = _response(json_data={})
        with pytest.raises(RemoteError):
            client.create_vm({"name": "validator_vm"})

    @patch(REQUEST)
    def test_get_compose_hash(self, mock_req, client):
        mock_req.return_value = _response(json_data={"hash": "ff" * 32})
        assert client.get_compose_hash({"compose_file": "{}"}) == "ff" * 32

    @patch(REQUEST)
    def test_stop_and_remove(self, mock_req, client):
        mock_req.return_value = _response(json_data={})
        client.stop_vm("vm-1")
        client.remove_vm("vm-1")
        urls = [c.args[1] for c in mock_req.call_args_list]
        assert urls == [
            "http://localhost:10300/prpc/StopVm?json",
            "http://localhost:10300/prpc/RemoveVm?json",
        ]
