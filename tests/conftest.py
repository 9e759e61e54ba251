"""
Shared fixtures: WAT programs compiled to wasm and image descriptors around them.
"""
import io
import tarfile

import pytest
from wasmtime import wat2wasm

from d2w.MODELS.container_spec import ContainerSpec
from d2w.MODELS.image_descriptor import ImageConfig, ImageDescriptor, Layer

HELLO_WAT = """
(module
  (import "env" "container_log" (func $log (param i32 i32)))
  (import "env" "get_container_info" (func $info (result i32)))
  (memory (export "memory") 1)
  (data (i32.const 16) "hello from wasm")
  (func (export "_start")
    (call $log (i32.const 16) (i32.const 15))
    (drop (call $info))))
"""

TRAP_WAT = """
(module
  (memory (export "memory") 1)
  (func (export "_start") unreachable))
"""

BAD_LOG_WAT = """
(module
  (import "env" "container_log" (func $log (param i32 i32)))
  (memory (export "memory") 1)
  (func (export "_start")
    (call $log (i32.const 65530) (i32.const 100))))
"""

EXIT_WAT = """
(module
  (import "wasi_snapshot_preview1" "proc_exit" (func $exit (param i32)))
  (memory (export "memory") 1)
  (func (export "_start")
    (call $exit (i32.const {code}))))
"""

LOOP_WAT = """
(module
  (memory (export "memory") 1)
  (func (export "_start")
    (loop $spin (br $spin))))
"""

NO_START_WAT = """
(module
  (memory (export "memory") 1)
  (func (export "main")))
"""


def write_wasm(directory, name, wat):
    path = directory / name
    path.write_bytes(wat2wasm(wat))
    return str(path)


def make_layer(directory, name, files):
    """Write a gzip layer archive holding {path: bytes} entries."""
    path = directory / name
    with tarfile.open(path, "w:gz") as tar:
        for member_name, data in files.items():
            info = tarfile.TarInfo(member_name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return str(path)


@pytest.fixture
def wasm_dir(tmp_path):
    directory = tmp_path / "images"
    directory.mkdir()
    return directory


@pytest.fixture
def make_image(wasm_dir):
    """Factory for image descriptors around a WAT program."""
    def factory(wat=HELLO_WAT, name="hello", layers=None, **config):
        wasm_path = write_wasm(wasm_dir, f"{name}.wasm", wat)
        return ImageDescriptor(
            name=name,
            layers=[Layer(digest=f"sha256:{i}", path=p) for i, p in enumerate(layers or [])],
            config=ImageConfig(**config),
            wasm_path=wasm_path,
        )
    return factory


@pytest.fixture
def make_spec(make_image):
    """Factory for container specs around a WAT program."""
    def factory(wat=HELLO_WAT, name="hello", **overrides):
        return ContainerSpec.build(make_image(wat, name=name), **overrides)
    return factory
