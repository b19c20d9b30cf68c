from pathlib import Path
from pydantic import BaseModel
import os
from dotenv import load_dotenv
from embedded_plugins import __version__

# Optionally load a config.env file for local development so operators can keep
# alias overrides next to the gateway instead of in the service definition.
_cfg_override = os.getenv('EMBEDDED_PLUGINS_CONFIG_FILE')
_candidates: list[Path] = []
if _cfg_override:
    _candidates.append(Path(_cfg_override))
_candidates.append(Path.cwd() / 'config.env')

for _p in _candidates:
    if _p.is_file():
        # Real environment variables always win over file entries.
        load_dotenv(str(_p), override=False)
        break

"""Central configuration.

Env vars:
  EMBEDDED_PLUGINS_CONFIG_FILE     - explicit path to a dotenv file
  EMBEDDED_PLUGINS_ALIAS_PREFIX    - prefix of the per-plugin alias variables
                                     (<PREFIX>_<PLUGIN>_KEY)
  EMBEDDED_PLUGINS_LOG_LEVEL       - DEBUG, INFO, WARNING, ERROR, CRITICAL
  EMBEDDED_PLUGINS_LIST_SEPARATOR  - delimiter used when a list field is given as a string
  EMBEDDED_PLUGINS_VERSION         - override reported version
"""

DEFAULT_ALIAS_PREFIX = 'TRAEFIK_EMBEDDED'


class Settings(BaseModel):
    app_name: str = 'Embedded Plugins'
    version: str = os.getenv('EMBEDDED_PLUGINS_VERSION', __version__)
    alias_env_prefix: str = os.getenv('EMBEDDED_PLUGINS_ALIAS_PREFIX', DEFAULT_ALIAS_PREFIX).strip() or DEFAULT_ALIAS_PREFIX
    log_level: str = os.getenv('EMBEDDED_PLUGINS_LOG_LEVEL', 'INFO')
    list_separator: str = os.getenv('EMBEDDED_PLUGINS_LIST_SEPARATOR', ',') or ','


settings = Settings()
