import pytest

from radiance_pipeline.llm import DemoCompletionClient
from radiance_pipeline.prompt import PromptManager
from radiance_pipeline.roles import RoleCatalog


@pytest.fixture(scope="session")
def catalog():
    return RoleCatalog().load()

@pytest.fixture(scope="session")
def prompts():
    return PromptManager()

@pytest.fixture
def demo_client(catalog):
    return DemoCompletionClient(catalog)
