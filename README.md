# calnex

A client library and command-line tool for managing Calnex Sentinel
time-measurement appliances over their HTTPS API. It configures PTP and NTP
measurement channels, exports measurement data as JSON lines, upgrades
firmware, installs TLS certificates, and can clear, reboot or collect problem
reports from a device.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Command line

Commands that change the device only report what they would do unless
`--apply` is given. Pass `--insecureTLS` to skip TLS certificate verification
when talking to the device API.

```
calnex config --target calnex01.example.com --file devices.json --apply
calnex export --source calnex01.example.com --channel 1 --channel 2
calnex firmware --target calnex01.example.com --file sentinel_fw_v2.13.1.0.5583D-20210924.tar --apply
calnex cert --target calnex01.example.com --file device.pem --apply
calnex clear --target calnex01.example.com --apply
calnex reboot --target calnex01.example.com --apply
calnex report --target calnex01.example.com --dir /tmp
```

- `config` reads a JSON file of device configurations and picks the entry for
  the target (the entry must include a `network` section). It edits the
  device's `measure` settings: fixed base settings, addresses and gateways of
  both ports, and the probe and target of each configured channel; channels
  not in the file are disabled. With `--apply`, it stops a running
  measurement, uploads the settings if anything changed, and starts
  measurement if something changed or none was running.
- `export` prints one JSON object per measurement sample to standard output.
  Without `--channel`, the channels marked as used in the device settings are
  exported. Channel names are `a`–`f`, `1` and `2`.
- `firmware` compares the device's firmware with the version in the file
  name (`sentinel_fw_v<version>.<ext>`) and, with `--apply`, stops
  measurement if needed and uploads the file when it is newer.
- `cert` parses a PEM bundle (certificates and one RSA private key), checks
  that a certificate matches the target host and is valid now, compares it
  with the certificates the device serves on port 443, and with `--apply`
  installs it if it differs.
- `clear` wipes device data (the device then reboots); `reboot` restarts the
  device. Both need `--apply`.
- `report` saves a problem report tarball, named
  `calnex_problem_report_<date>_<time>.tar`, to the given directory
  (default `/tmp`).

Errors are logged and the command exits with status 1.

A configuration file for `config` looks like this:

```json
{
  "calnex01.example.com": {
    "network": {
      "eth1": "fd00::11",
      "gw1": "fd00::a",
      "eth2": "fd00::12",
      "gw2": "fd00::a"
    },
    "calnex": {
      "1": {"target": "fd00::d", "probe": "ntp"},
      "2": {"target": "fd00::d", "probe": "ptp"}
    }
  }
}
```

## Library

```python
from calnex.api import API

api = API("calnex01.example.com", False)
status = api.fetch_status()
for channel in api.fetch_used_channels():
    probe = api.fetch_channel_probe(channel)
    print(channel, probe, api.fetch_channel_target_ip(channel, probe))
```

Modules:

- `calnex.api` — `API` client, `Channel` and `Probe` enums, `Status`,
  `Result` and `DeviceVersion` responses; failures raise `APIError`.
- `calnex.inifile` — `parse_ini` and `IniFile`, an order-preserving INI
  document used for device settings.
- `calnex.config` — `MeasureConfig`, `NetworkConfig`, `SettingsEditor` and
  `configure`, which applies a configuration to a device.
- `calnex.export` — `entry_from_csv`, `Entry` and `export`, which writes
  measurement data to a text stream; raises `ExportError` if nothing could
  be exported.
- `calnex.firmware` — `FirmwareVersion`, `OSSFirmware` and
  `update_firmware`.
- `calnex.cert` — `parse` and `fetch` for certificate bundles, with
  `Bundle.equals` and `Bundle.verify`; failures raise `CertError`.
- `calnex.cli` — the `calnex` command (`main`) and the `run_*` functions
  behind each subcommand.