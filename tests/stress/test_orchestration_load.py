import asyncio
import time
import pytest
from conftest import HELLO_WAT
from d2w.MANAGERS.network_manager import NetworkManager
from d2w.MODELS.container_record import ContainerStatus
from d2w.MODELS.runtime_settings import RuntimeSettings
from d2w.PARSERS.descriptor_parser import DescriptorParser
from d2w.RUNNERS.execution_session import ExecutionSession

@pytest.mark.asyncio
async def test_stress_sessions(tmp_path, make_spec):
    """
    Stress test by running 20 containers at once on one session.
    """
    session = ExecutionSession(settings=RuntimeSettings(bind_host="127.0.0.1", staging_dir=str(tmp_path)))
    specs = [make_spec(HELLO_WAT, name=f"service_{i}") for i in range(20)]

    start_time = time.time()
    records = await asyncio.gather(*(session.run(spec) for spec in specs))
    end_time = time.time()
    print(f"Ran 20 containers in {end_time - start_time:.2f}s")

    assert all(r.status == ContainerStatus.EXITED for r in records)
    assert len(session.list(include_all=True)) == 20
    assert session.network_manager.networks["bridge"].containers == []

def test_address_churn():
    mgr = NetworkManager()
    for i in range(2000):
        mgr.allocate(f"c{i}")
    for i in range(0, 2000, 3):
        mgr.release(f"c{i}")
    for i in range(2000, 2700):
        mgr.allocate(f"c{i}")

    net = mgr.networks["bridge"]
    addresses = [net.address_of(c) for c in net.containers]
    assert len(addresses) == len(set(addresses))
    assert sorted(net.members.values()) == list(range(2, 2 + len(net.members)))

def test_large_descriptor_parsing():
    content = "name: big\nlayers:\n"
    for i in range(1000):
        content += f"  - layers/{i}.tar.gz\n"
    content += "config:\n  env:\n"
    for i in range(1000):
        content += f"    - VAR_{i}=value_{i}\n"

    image = DescriptorParser(context={}).parse_from_string(content)
    assert len(image.layers) == 1000
    assert len(image.config.env) == 1000
