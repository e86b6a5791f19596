"""Shared constants for pilotchat.

Import-safe module with no dependencies, so it can be imported from anywhere
without risk of circular imports.
"""

GITHUB_HOST = "github.com"
GITHUB_API_HOST = "api.github.com"

GITHUB_DEVICE_CODE_PATH = "/login/device/code"
GITHUB_ACCESS_TOKEN_PATH = "/login/oauth/access_token"
COPILOT_TOKEN_EXCHANGE_PATH = "/copilot_internal/v2/token"
COPILOT_TOKEN_EXCHANGE_URL = f"https://{GITHUB_API_HOST}{COPILOT_TOKEN_EXCHANGE_PATH}"

# Client id used by the VS Code Copilot extension
COPILOT_CLIENT_ID = "Iv1.b507a08c87ecfe98"
COPILOT_SCOPE = "read:user"
DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

# Upstream rejects requests without these, values must be sent verbatim.
COPILOT_HEADERS = {
    "User-Agent": "GitHubCopilotChat/0.24.2025012401",
    "Copilot-Integration-Id": "vscode-chat",
    "Editor-Version": "vscode/1.103.2",
    "x-github-api-version": "2025-05-01",
}

SESSION_EXPIRY_BUFFER_SECONDS = 60
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0

GITHUB_MODELS_BASE_URL = "https://models.inference.ai.azure.com"
OPENAI_BASE_URL = "https://api.openai.com/v1"
OLLAMA_BASE_URL = "http://localhost:11434/v1"

COPILOT_CONFIG_DIR_NAME = "github-copilot"
COPILOT_APP_KEY = "pilotchat"
