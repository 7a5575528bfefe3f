import os

import pytest
import responses

from calnex.api import (
    API,
    APIError,
    Channel,
    DeviceVersion,
    Probe,
    Result,
    Status,
    parse_response,
)
from calnex.inifile import parse_ini

HOST = "calnex.example.com"
BASE = f"https://{HOST}/api"

STATUS_JSON = (
    '{\n"referenceReady": true,\n"modulesReady": true,\n"measurementActive": true\n}\n'
)
RESULT_OK = '{\n"result": true\n}\n'


@pytest.fixture
def api():
    return API(HOST, True)


@pytest.fixture
def rsps():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


@pytest.mark.parametrize("channel", list(Channel))
def test_channel_string_round_trip(channel):
    assert Channel.from_string(str(channel)) is channel
    assert f"{channel}" == str(channel)


def test_channel_names():
    assert str(Channel.ONE) == "1"
    assert str(Channel.A) == "a"
    assert Channel.TWO.calnex() == 7
    assert Channel.ONE.calnex_api() == "ch6"


def test_bad_channel():
    with pytest.raises(APIError, match="channel is not recognized"):
        Channel.from_string("z")


def test_probe_mappings():
    assert Probe.from_string("ntp") is Probe.NTP
    assert Probe.from_calnex("2") is Probe.NTP
    assert Probe.from_calnex("0") is Probe.PTP
    assert str(Probe.PTP) == "ptp"
    assert Probe.PTP.calnex_name() == "PTP slave"
    assert Probe.NTP.calnex_name() == "NTP client"
    assert Probe.PTP.server_type() == "master_ip"
    assert Probe.NTP.server_type() == "server_ip"


@pytest.mark.parametrize("value", ["udp", "1", ""])
def test_bad_probe(value):
    with pytest.raises(APIError, match="probe protocol is not recognized"):
        Probe.from_string(value)
    with pytest.raises(APIError):
        Probe.from_calnex(value)


def test_parse_response():
    assert parse_response("measure/ch6/ptp_synce/ntp/server_ip=127.0.0.1\n") == "127.0.0.1"
    assert parse_response("measure/ch6/ptp_synce/mode/probe_type=2") == "2"


@pytest.mark.parametrize("text", ["novalue", "a=b=c"])
def test_parse_response_invalid(text):
    with pytest.raises(APIError, match="invalid response from API"):
        parse_response(text)


def test_json_decoding_ignores_case():
    status = Status.from_json(
        {"referenceReady": True, "modulesReady": False, "measurementActive": True}
    )
    assert status == Status(True, False, True)
    assert Result.from_json({"result": False, "message": "oops"}) == Result(False, "oops")
    assert DeviceVersion.from_json({"firmware": "2.11.1.0.5583D-20210924"}).firmware == (
        "2.11.1.0.5583D-20210924"
    )


def test_tls_verification_flag():
    assert API(HOST, True).session.verify is False
    assert API(HOST, False).session.verify is True


def test_fetch_csv(api, rsps):
    rsps.add(
        responses.GET,
        f"{BASE}/getdata",
        body="# header\n1607961193.773740,-000.000000250501\n",
    )
    rows = api.fetch_csv(Channel.ONE)
    assert rows == [["1607961193.773740", "-000.000000250501"]]
    url = rsps.calls[0].request.url
    assert "channel=1" in url
    assert "datatype=2wayte" in url
    assert "reset=true" in url


def test_fetch_csv_inconsistent_fields(api, rsps):
    rsps.add(responses.GET, f"{BASE}/getdata", body="1,2\n3\n")
    with pytest.raises(APIError, match="failed to parse csv"):
        api.fetch_csv(Channel.A)


def test_fetch_channel_probe(api, rsps):
    rsps.add(
        responses.GET,
        f"{BASE}/get/measure/ch6/ptp_synce/mode/probe_type",
        body="measure/ch6/ptp_synce/mode/probe_type=2\n",
    )
    assert api.fetch_channel_probe(Channel.ONE) is Probe.NTP


def test_fetch_channel_target_ip(api, rsps):
    rsps.add(
        responses.GET,
        f"{BASE}/get/measure/ch6/ptp_synce/ntp/server_ip",
        body="measure/ch6/ptp_synce/ntp/server_ip=127.0.0.1\n",
    )
    assert api.fetch_channel_target_ip(Channel.ONE, Probe.NTP) == "127.0.0.1"


def test_fetch_settings_and_used_channels(api, rsps):
    rsps.add(
        responses.GET,
        f"{BASE}/getsettings",
        body="[measure]\nch0\\used=No\nch6\\used=Yes\nch7\\used=No\n",
    )
    settings = api.fetch_settings()
    assert settings.section("measure")["ch6\\used"] == "Yes"
    assert api.fetch_used_channels() == [Channel.ONE]


def test_fetch_status(api, rsps):
    rsps.add(responses.GET, f"{BASE}/getstatus", body=STATUS_JSON)
    assert api.fetch_status() == Status(True, True, True)


def test_fetch_version(api, rsps):
    rsps.add(
        responses.GET,
        f"{BASE}/version",
        body='{ "firmware": "2.11.1.0.5583D-20210924" }\n',
    )
    assert api.fetch_version().firmware == "2.11.1.0.5583D-20210924"


def test_http_error_status(api, rsps):
    rsps.add(responses.GET, f"{BASE}/getstatus", status=500)
    with pytest.raises(APIError, match="Internal Server Error"):
        api.fetch_status()


def test_unreachable_device_raises(api):
    with responses.RequestsMock():
        with pytest.raises(APIError):
            api.fetch_version()


def test_fetch_problem_report(api, rsps, tmp_path):
    payload = b"tar-bytes"
    rsps.add(responses.GET, f"{BASE}/getproblemreport", body=payload)
    name = api.fetch_problem_report(tmp_path)
    base = os.path.basename(name)
    assert base.startswith("calnex_problem_report_")
    assert base.endswith(".tar")
    assert os.path.dirname(name) == str(tmp_path)
    with open(name, "rb") as report:
        assert report.read() == payload


def test_push_cert(api, rsps):
    cert = b"-----BEGIN CERTIFICATE-----\n"
    rsps.add(responses.POST, f"{BASE}/installcertificate", body=RESULT_OK)
    result = api.push_cert(cert)
    assert result.result is True
    request = rsps.calls[0].request
    assert request.body == cert
    assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"


def test_push_rejected(api, rsps):
    rsps.add(
        responses.POST,
        f"{BASE}/installcertificate",
        body='{"result": false, "message": "bad cert"}',
    )
    with pytest.raises(APIError, match="bad cert"):
        api.push_cert(b"data")


def test_push_version(api, rsps, tmp_path):
    firmware = tmp_path / "sentinel_fw_v2.13.1.0.5583D-20210924.tar"
    firmware.write_bytes(b"firmware")
    rsps.add(responses.POST, f"{BASE}/updatefirmware", body=RESULT_OK)
    assert api.push_version(firmware).result is True
    assert rsps.calls[0].request.body == b"firmware"


def test_push_settings(api, rsps):
    settings = parse_ini("[measure]\nch6\\used=Yes\n")
    rsps.add(responses.POST, f"{BASE}/setsettings", body=RESULT_OK)
    api.push_settings(settings)
    assert len(rsps.calls) == 1
    assert rsps.calls[0].request.body == settings.to_bytes()


@pytest.mark.parametrize(
    "method, path, query",
    [
        ("start_measure", "startmeasurement", ""),
        ("stop_measure", "stopmeasurement", ""),
        ("clear_device", "cleardevice", "action=cleardevice"),
        ("reboot", "reboot", "action=reboot"),
    ],
)
def test_actions(api, rsps, method, path, query):
    rsps.add(responses.GET, f"{BASE}/{path}", body=RESULT_OK)
    assert getattr(api, method)() is None
    assert len(rsps.calls) == 1
    url = rsps.calls[0].request.url
    assert url.split("?")[0] == f"{BASE}/{path}"
    assert query in url


def test_action_failure(api, rsps):
    rsps.add(
        responses.GET,
        f"{BASE}/startmeasurement",
        body='{"result": false, "message": "busy"}',
    )
    with pytest.raises(APIError, match="busy"):
        api.start_measure()