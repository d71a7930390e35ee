"""Client and session options.

Example usage:
    from copilot_engine.config import load_client_options

    # ./copilot-engine.yaml, user options file, COPILOT_* variables
    options = load_client_options(log_level="debug")
"""

from copilot_engine.config.loader import env_overrides, load_client_options, load_yaml_file
from copilot_engine.config.paths import get_config_paths, get_user_config_path
from copilot_engine.config.schema import (
    Attachment,
    ClientOptions,
    CustomAgentConfig,
    DirectoryAttachment,
    FileAttachment,
    InfiniteSessionConfig,
    LargeOutputConfig,
    MCPLocalServerConfig,
    MCPRemoteServerConfig,
    ProviderConfig,
    ResumeSessionConfig,
    SelectionAttachment,
    SessionConfig,
    SessionHooks,
    SessionListFilter,
    SystemMessageConfig,
)
from copilot_engine.config.validation import build_model, check_keys

__all__ = [
    # Loading
    "env_overrides",
    "get_config_paths",
    "get_user_config_path",
    "load_client_options",
    "load_yaml_file",
    # Validation
    "build_model",
    "check_keys",
    # Options
    "Attachment",
    "ClientOptions",
    "CustomAgentConfig",
    "DirectoryAttachment",
    "FileAttachment",
    "InfiniteSessionConfig",
    "LargeOutputConfig",
    "MCPLocalServerConfig",
    "MCPRemoteServerConfig",
    "ProviderConfig",
    "ResumeSessionConfig",
    "SelectionAttachment",
    "SessionConfig",
    "SessionHooks",
    "SessionListFilter",
    "SystemMessageConfig",
]
