import os

import pytest


@pytest.fixture(autouse=True)
def ensure_clean_environment(monkeypatch):
    for name in [
        "SECRETSYNC_AGE_IDENTITIES",
        "SECRETSYNC_AGE_IDENTITY_PASSPHRASE",
        "VAULT_ADDR",
        "VAULT_TOKEN",
    ]:
        monkeypatch.delitem(os.environ, name, raising=False)


@pytest.fixture(autouse=True)
def ensure_workingdir(request):
    working_dir = os.getcwd()
    yield
    os.chdir(working_dir)
