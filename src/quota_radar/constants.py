"""Wire-level and platform constants for the language server."""

LOOPBACK_HOST = "127.0.0.1"

# Connect RPC endpoints served by the language server
PING_ENDPOINT = "/exa.language_server_pb.LanguageServerService/GetUnleashData"
USER_STATUS_ENDPOINT = "/exa.language_server_pb.LanguageServerService/GetUserStatus"

CSRF_HEADER = "X-Codeium-Csrf-Token"
PROTOCOL_VERSION_HEADER = "Connect-Protocol-Version"
PROTOCOL_VERSION = "1"

# Metadata sent with every status request
CLIENT_METADATA = {
    "ideName": "antigravity",
    "extensionName": "antigravity",
    "locale": "en",
}

# Process names of the language server binary per platform
PROCESS_NAMES = {
    "windows": "language_server_windows_x64.exe",
    "darwin_arm": "language_server_macos_arm",
    "darwin_x64": "language_server_macos",
    "linux": "language_server_linux",
}

# Product name expected as the --app_data_dir value
DEFAULT_PRODUCT_NAME = "antigravity"

REDACTED = "***REDACTED***"
