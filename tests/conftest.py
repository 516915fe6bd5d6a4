import pytest

from sshcommand_acl import ACLStore
from tests.helpers import FakeResolver


@pytest.fixture
def resolver(tmp_path):
    return FakeResolver(tmp_path / "home")


@pytest.fixture
def deploy(resolver):
    """An existing account with an empty authorized_keys file."""
    account = resolver.add("deploy")
    ssh_dir = account.home_dir / ".ssh"
    ssh_dir.mkdir(mode=0o700)
    (ssh_dir / "authorized_keys").touch(mode=0o600)
    return account


@pytest.fixture
def store(resolver):
    return ACLStore(resolver)
