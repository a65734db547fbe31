import logging
from typing import Callable, List

import config
import storage as keys
from errors import ValidationError
from notifications import Listeners
from schemas import ApiEnvironment

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT = "live"


def build_environments():
    names = {"test": "Test", "pilot": "Pilot", "live": "Live", "dummy": "Local Dummy"}
    return {n: ApiEnvironment(name=n, display_name=d, base_url=config.EPICOR_URLS[n], api_key=config.EPICOR_API_KEY)
            for n, d in names.items()}


class EnvironmentSelector:
    """Active ERP target. Every login and logout puts it back on live."""

    def __init__(self, storage, environments=None):
        self.storage = storage
        self.environments = environments or build_environments()
        self.listeners = Listeners()
        saved = storage.get_item(keys.SELECTED_ENVIRONMENT)
        self._current = self.environments.get(saved) or self.environments[DEFAULT_ENVIRONMENT]

    @property
    def current(self) -> ApiEnvironment: return self._current

    def list(self) -> List[ApiEnvironment]: return list(self.environments.values())

    def subscribe(self, fn: Callable[[ApiEnvironment], None]): return self.listeners.subscribe(fn)

    def set_environment(self, name: str) -> ApiEnvironment:
        env = self.environments.get(name)
        if env is None: raise ValidationError(f"Environment tidak dikenal: {name}")
        self._current = env
        self.storage.set_item(keys.SELECTED_ENVIRONMENT, name)
        logger.info("environment set to %s", name)
        self.listeners.emit(env)
        return env

    def reset(self) -> ApiEnvironment:
        return self.set_environment(DEFAULT_ENVIRONMENT)
