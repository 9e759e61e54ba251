"""
Models representing a resolved container image handed to the runtime.
"""
from typing import List, Optional
from pydantic import BaseModel, Field

from ..exceptions import CompileError


class Layer(BaseModel):
    """
    A single filesystem layer archive, already downloaded to local disk.
    """
    digest: str
    path: str
    size: int = 0
    media_type: str = "application/vnd.oci.image.layer.v1.tar+gzip"


class ImageConfig(BaseModel):
    """
    The effective runtime configuration baked into an image.
    """
    env: List[str] = []
    cmd: List[str] = []
    entrypoint: List[str] = []
    workdir: str = "/"
    exposed_ports: List[str] = []


class ImageDescriptor(BaseModel):
    """
    A resolved image: name, ordered layers, config and the extracted wasm payload.
    """
    name: str
    tag: str = "latest"
    layers: List[Layer] = []
    config: ImageConfig = Field(default_factory=ImageConfig)
    wasm_path: Optional[str] = None

    @property
    def reference(self) -> str:
        return f"{self.name}:{self.tag}"

    def read_payload(self) -> bytes:
        """
        Reads the wasm payload extracted from the image.

        :return: The raw module bytes.
        :raises CompileError: If the image carries no payload or it cannot be read.
        """
        if not self.wasm_path:
            raise CompileError(f"No WASM binary found in image {self.reference}")
        try:
            with open(self.wasm_path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise CompileError(f"Cannot read WASM binary {self.wasm_path}: {e}") from e
