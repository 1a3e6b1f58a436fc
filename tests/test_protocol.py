from mcp_agent_client.protocol import (
    decode_messages,
    extract_error,
    is_request_message,
    is_response_message,
    iter_sse_data,
    make_error_response,
    make_notification,
    make_request,
    parse_www_authenticate,
)


def test_make_request_builds_expected_envelope() -> None:
    payload = make_request(7, "tools/call", {"name": "echo"})
    assert payload["jsonrpc"] == "2.0"
    assert payload["id"] == 7
    assert payload["method"] == "tools/call"
    assert payload["params"] == {"name": "echo"}


def test_notification_has_no_id() -> None:
    payload = make_notification("notifications/initialized")
    assert "id" not in payload
    assert "params" not in payload
    assert not is_request_message(payload)
    assert not is_response_message(payload)


def test_extract_error_reads_error_payload() -> None:
    response = make_error_response(9, -32000, "boom", {"x": 1})
    error = extract_error(response)
    assert error is not None
    assert error["code"] == -32000
    assert error["message"] == "boom"
    assert error["data"] == {"x": 1}
    assert is_response_message(response)


def test_iter_sse_data_joins_multiline_events_and_skips_comments() -> None:
    lines = [
        ": keep-alive",
        "event: message",
        'data: {"a":',
        "data: 1}",
        "",
        'data: {"b": 2}',
    ]
    assert list(iter_sse_data(lines)) == ['{"a":\n1}', '{"b": 2}']


def test_decode_messages_flattens_batches() -> None:
    assert decode_messages('[{"id": 1}, 3, {"id": 2}]') == [{"id": 1}, {"id": 2}]
    assert decode_messages('{"id": 1}') == [{"id": 1}]
    assert decode_messages("42") == []


def test_parse_www_authenticate_reads_bearer_params() -> None:
    header = (
        'Bearer realm="mcp", resource_metadata="https://api.example.com/.well-known/'
        'oauth-protected-resource", scope="read write"'
    )
    params = parse_www_authenticate(header)
    assert params["resource_metadata"] == "https://api.example.com/.well-known/oauth-protected-resource"
    assert params["scope"] == "read write"
    assert parse_www_authenticate(None) == {}
