import pytest

from mcp_agent_client.completions import DEFAULT_BASE_URL
from mcp_agent_client.config import ClientSettings
from mcp_agent_client.loop import DEFAULT_SYSTEM_PROMPT
from mcp_agent_client.proxy import DEFAULT_SAMPLING_MODEL


def test_defaults_when_environment_is_empty() -> None:
    settings = ClientSettings.from_env({})
    assert settings.api_key is None
    assert settings.base_url == DEFAULT_BASE_URL
    assert settings.model == DEFAULT_SAMPLING_MODEL
    assert settings.system_prompt == DEFAULT_SYSTEM_PROMPT
    assert settings.max_iterations == 10
    assert settings.tool_timeout == 60.0
    assert settings.extended_tool_timeout == 300.0


def test_environment_overrides() -> None:
    settings = ClientSettings.from_env(
        {
            "OPENROUTER_API_KEY": "sk-1",
            "OPENROUTER_BASE_URL": "https://proxy.example.com/v1",
            "MCP_AGENT_MODEL": "vendor/model",
            "MCP_AGENT_MAX_ITERATIONS": "0",
            "MCP_AGENT_TOOL_TIMEOUT": "12.5",
            "MCP_AGENT_TOOL_TIMEOUT_EXTENDED": "90",
            "MCP_OAUTH_CLIENT_ID": "my-client",
            "MCP_OAUTH_REDIRECT_URI": "http://localhost:8765/callback",
            "MCP_AGENT_SYSTEM_PROMPT": "   ",
        }
    )
    assert settings.api_key == "sk-1"
    assert settings.base_url == "https://proxy.example.com/v1"
    assert settings.model == "vendor/model"
    assert settings.max_iterations == 0
    assert settings.tool_timeout == 12.5
    assert settings.extended_tool_timeout == 90.0
    assert settings.oauth_client_id == "my-client"
    assert settings.oauth_redirect_uri == "http://localhost:8765/callback"
    assert settings.system_prompt == DEFAULT_SYSTEM_PROMPT


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("MCP_AGENT_MAX_ITERATIONS", "ten"),
        ("MCP_AGENT_MAX_ITERATIONS", "2.5"),
        ("MCP_AGENT_TOOL_TIMEOUT", "-1"),
    ],
)
def test_malformed_numbers_name_the_variable(name: str, value: str) -> None:
    with pytest.raises(ValueError, match=name):
        ClientSettings.from_env({name: value})
