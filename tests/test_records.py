import pytest

from bulkops.records import (
    generate_csv,
    normalize_row,
    optimal_chunk_size,
    parse_csv,
    parse_json_records,
    resolve_fields,
    row_to_patch,
    row_to_user_payload,
    user_to_row,
    validate_user_rows,
)


def test_parse_csv_handles_bom_quotes_and_blank_lines():
    text = '\ufeffusername,email,firstName\n"doe, jane",jane@example.com, Jane \n\n,,\nbob,bob@example.com\n'
    headers, rows = parse_csv(text)

    assert headers == ["username", "email", "firstName"]
    assert rows == [
        {"username": "doe, jane", "email": "jane@example.com", "firstName": "Jane"},
        {"username": "bob", "email": "bob@example.com", "firstName": ""},
    ]


def test_parse_csv_custom_delimiter_and_empty_input():
    assert parse_csv("") == ([], [])
    headers, rows = parse_csv("username;email\na;a@example.com\n", delimiter=";")
    assert rows == [{"username": "a", "email": "a@example.com"}]


def test_parse_json_records_accepts_wrapped_lists():
    assert parse_json_records('[{"username": "a"}]') == [{"username": "a"}]
    assert parse_json_records('{"users": [{"username": "b"}]}') == [{"username": "b"}]
    assert parse_json_records('{"_embedded": {"users": [{"username": "c"}]}}') == [{"username": "c"}]
    with pytest.raises(ValueError):
        parse_json_records('{"username": "a"}')


def test_normalize_row_maps_aliases():
    row = normalize_row({"First Name": "x", "first_name": "Ann", "LastName": "Lee", "Email": " a@b.io "})
    assert row["givenName"] == "Ann"
    assert row["familyName"] == "Lee"
    assert row["email"] == "a@b.io"
    assert row["First Name"] == "x"


def test_validate_user_rows_reports_errors_and_warnings():
    report = validate_user_rows(
        [
            {"username": "a", "email": "a@example.com"},
            {"username": "", "email": ""},
            {"username": "b", "email": "not-an-email"},
            {"username": "A", "email": "other@example.com", "shoeSize": "9"},
        ]
    )
    assert report["valid"] is False
    assert report["total"] == 4
    assert report["invalid_rows"] == [1, 2]
    messages = [w["message"] for w in report["warnings"]]
    assert any("Duplicate username 'A'" in m for m in messages)
    assert messages[-1] == "Unknown columns ignored: shoeSize"


def test_row_to_user_payload_builds_nested_body():
    payload = row_to_user_payload(
        {"email": "jane@example.com", "firstName": "Jane", "lastName": "Doe", "enabled": "false"},
        default_population_id="pop-1",
    )
    assert payload == {
        "username": "jane@example.com",
        "email": "jane@example.com",
        "name": {"given": "Jane", "family": "Doe"},
        "population": {"id": "pop-1"},
        "enabled": False,
    }


def test_row_to_patch_keeps_only_present_attributes():
    patch = row_to_patch({"id": "u1", "username": "jane", "email": "jane@example.com", "title": "Engineer"})
    assert patch == {"title": "Engineer"}
    assert row_to_patch({"email": "jane@example.com", "populationId": "pop-2"}) == {"population": {"id": "pop-2"}}


def test_user_to_row_and_csv_generation():
    user = {
        "id": "u1",
        "username": "jane",
        "email": "jane@example.com",
        "name": {"given": "Jane", "family": "Doe, Jr"},
        "population": {"id": "pop-1"},
        "enabled": True,
    }
    row = user_to_row(user)
    assert row["givenName"] == "Jane"
    assert row["populationId"] == "pop-1"

    text = generate_csv([row], resolve_fields("basic"))
    assert text.splitlines() == [
        "id,username,email,givenName,familyName,populationId,enabled",
        'u1,jane,jane@example.com,Jane,"Doe, Jr",pop-1,true',
    ]
    assert generate_csv([]) == ""


def test_resolve_fields():
    assert "createdAt" in resolve_fields("all")
    assert resolve_fields(["username", "first_name"]) == ["username", "givenName"]
    with pytest.raises(ValueError):
        resolve_fields("everything")


@pytest.mark.parametrize("total, size", [(0, 1000), (50, 100), (5000, 500), (20000, 1000), (75000, 2000), (200000, 5000), (600000, 10000)])
def test_optimal_chunk_size(total, size):
    assert optimal_chunk_size(total) == size
