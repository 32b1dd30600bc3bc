import pytest

from cert_checker import CertificateInfo, RawPeerCertificate, normalize, parse_alt_names


def _assert_fully_populated(info: CertificateInfo) -> None:
    data = info.to_dict()
    assert all(value is not None for value in data.values())
    for key in ("website", "issuer", "issuedBy", "validFrom", "validTo", "serialNumber", "country",
                "state", "locality", "organization", "organizationalUnit", "commonName", "fingerprint"):
        assert isinstance(data[key], str)
    assert isinstance(data["bits"], int) and data["bits"] >= 0
    assert isinstance(data["alternativeNames"], list)


@pytest.mark.parametrize("raw", [{}, RawPeerCertificate(), {"subject": None, "issuer": None}])
def test_empty_input_yields_defaults(raw) -> None:
    info = normalize(raw, "example.com")
    _assert_fully_populated(info)
    assert info.website == "example.com"
    assert info.issuer == "Unknown"
    assert info.issued_by == "Unknown"
    assert info.valid_from == "Unknown"
    assert info.valid_to == "Unknown"
    assert info.serial_number == "Unknown"
    assert info.fingerprint == "Unknown"
    assert info.common_name == ""
    assert info.bits == 0
    assert info.alternative_names == []


def test_issuer_and_subject_defaults_differ() -> None:
    info = normalize({"issuer": {}, "subject": {}}, "example.com")
    assert info.issuer == "Unknown"
    for value in (info.organization, info.country, info.state, info.locality,
                  info.common_name, info.organizational_unit):
        assert value == ""


def test_full_certificate_fields() -> None:
    raw = {
        "subject": {"C": "US", "ST": "California", "L": "San Francisco", "O": "Example Inc",
                    "OU": "Web", "CN": "example.com"},
        "issuer": {"C": "US", "O": "Let's Encrypt", "CN": "R3"},
        "valid_from": "Jan  5 09:34:43 2024 GMT",
        "valid_to": "Apr  4 09:34:42 2024 GMT",
        "serialNumber": "03A1B2",
        "fingerprint": "AA:BB:CC",
        "bits": 2048,
        "subjectaltname": "DNS:example.com, DNS:www.example.com",
    }
    info = normalize(raw, "example.com")
    assert info.issuer == "R3"
    assert info.issued_by == "Let's Encrypt"
    assert info.organization == "Example Inc"
    assert info.organizational_unit == "Web"
    assert info.common_name == "example.com"
    assert (info.country, info.state, info.locality) == ("US", "California", "San Francisco")
    assert info.valid_from == "Jan  5 09:34:43 2024 GMT"
    assert info.serial_number == "03A1B2"
    assert info.bits == 2048
    assert info.alternative_names == ["example.com", "www.example.com"]
    assert info.self_signed is False


def test_alt_names_trimmed_and_ordered() -> None:
    info = normalize({"subjectaltname": "DNS:a.com, DNS:www.a.com,  DNS:b.com"}, "a.com")
    assert info.alternative_names == ["a.com", "www.a.com", "b.com"]


def test_alt_names_keep_duplicates_and_untagged_entries() -> None:
    assert parse_alt_names("DNS:A.com, DNS:a.com, DNS:a.com, IP Address:10.0.0.1") == [
        "A.com", "a.com", "a.com", "IP Address:10.0.0.1"]


def test_alt_names_only_strip_leading_prefix() -> None:
    assert parse_alt_names("URI:http://DNS:x") == ["URI:http://DNS:x"]


@pytest.mark.parametrize("value", [None, "", 42, ["DNS:a.com"]])
def test_alt_names_absent_or_malformed(value) -> None:
    assert normalize({"subjectaltname": value}, "a.com").alternative_names == []


@pytest.mark.parametrize("value,expected", [
    (4096, 4096), (256.0, 256), ("2048", 0), (None, 0), (True, 0), (-5, 0), (float("nan"), 0),
])
def test_bits(value, expected) -> None:
    assert normalize({"bits": value}, "a.com").bits == expected


def test_malformed_containers_do_not_raise() -> None:
    info = normalize({"subject": "CN=foo", "issuer": ["bad"], "valid_to": 12345,
                      "serialNumber": b"\x01"}, "a.com")
    _assert_fully_populated(info)
    assert info.common_name == ""
    assert info.issuer == "Unknown"
    assert info.valid_to == "Unknown"
    assert info.serial_number == "Unknown"


def test_multi_valued_attribute_takes_first_string() -> None:
    info = normalize({"subject": {"OU": ["", "Ops", "Dev"]}}, "a.com")
    assert info.organizational_unit == "Ops"


def test_self_signed_detection() -> None:
    dn = {"CN": "internal.local", "O": "Home"}
    assert normalize({"subject": dict(dn), "issuer": dict(dn)}, "internal.local").self_signed is True
    assert normalize({"subject": {}, "issuer": {}}, "internal.local").self_signed is False


def test_to_dict_uses_camel_case_keys() -> None:
    data = normalize({}, "a.com").to_dict()
    assert {"validFrom", "validTo", "serialNumber", "alternativeNames", "organizationalUnit",
            "commonName", "issuedBy"} <= set(data)
    assert data["chain"] == []
