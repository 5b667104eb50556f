import pytest

from chathub.app import ChatHub
from chathub.config import ChatConfig
from chathub.preferences import PreferencesStore
from chathub.storage import MemoryStore
from fakes import FakeLLM


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def preferences(store):
    return PreferencesStore(store, env_api_keys={"openai": "sk-test"})


@pytest.fixture
def make_hub(tmp_path):
    def _make(rounds=None, env_api_keys=None, **config_overrides):
        config = ChatConfig(data_dir=str(tmp_path / "data"), **config_overrides)
        fake = FakeLLM(rounds)
        hub = ChatHub(
            config=config,
            storage=MemoryStore(),
            root_path=tmp_path,
            completion_fn=fake,
            env_api_keys={"openai": "sk-test"} if env_api_keys is None else env_api_keys,
        )
        return hub, fake

    return _make
