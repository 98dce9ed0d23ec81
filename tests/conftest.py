import threading
import time

import pytest

from deployplan.config import Configuration
from deployplan.provisioning import ProvisionRequest, ProvisionResult, Provisioner
from deployplan.ui.console import Console, set_console


class FakeProvisioner(Provisioner):
    """Scripted provisioner: fixed outputs per step, optional failures and delays."""

    def __init__(self, outputs=None, fail=(), raise_on=(), delays=None, gates=None):
        self.outputs = outputs or {}
        self.fail = set(fail)
        self.raise_on = set(raise_on)
        self.delays = delays or {}
        self.gates = gates or {}  # step -> threading.Event to wait for
        self.requests = []
        self._lock = threading.Lock()

    @property
    def called(self):
        return [r.step for r in self.requests]

    def request(self, step):
        return next(r for r in self.requests if r.step == step)

    def provision(self, request: ProvisionRequest) -> ProvisionResult:
        with self._lock:
            self.requests.append(request)
        if request.step in self.gates:
            self.gates[request.step].wait(timeout=5)
        if request.step in self.delays:
            time.sleep(self.delays[request.step])
        if request.step in self.raise_on:
            raise RuntimeError(f"boom in {request.step}")
        if request.step in self.fail:
            return ProvisionResult.failed(f"{request.step} failed")
        return ProvisionResult.succeeded(self.outputs.get(request.step, {}))


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield
    set_console(Console())


@pytest.fixture
def mg_config():
    return Configuration(
        scope="management-group",
        management_group_id="mg-root",
        subscription_id="00000000-0000-0000-0000-000000000001",
    )


@pytest.fixture
def fake():
    """The FakeProvisioner class; call it to build one, or subclass it."""
    return FakeProvisioner
