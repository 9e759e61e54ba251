# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Parser for resolved image descriptor files (YAML or JSON).

A descriptor is what the provisioning side hands over after pulling an image:

    name: hello
    tag: latest
    wasm: app.wasm
    layers:
      - digest: sha256:...
        path: layers/0.tar.gz
    config:
      env: ["PATH=/usr/bin"]
      cmd: ["/app.wasm"]
      workdir: /
      exposed_ports: ["8080/tcp"]
"""
import os
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from ..MODELS.image_descriptor import ImageConfig, ImageDescriptor, Layer
from ..UTILS.string_interpolation import EnvironmentInterpolator


class DescriptorParser:
    """
    Parser for image descriptor files.
    """
    def __init__(self, context: Optional[Mapping[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables for ${VAR} interpolation; defaults to os.environ.
        """
        self.context = dict(os.environ) if context is None else dict(context)

    def parse(self, descriptor_path: str) -> ImageDescriptor:
        """
        Parses a descriptor file. Relative layer and wasm paths are resolved
        against the file's directory.

        :param descriptor_path: Path to the descriptor.
        :return: The resolved image descriptor.
        """
        with open(descriptor_path, 'r') as f:
            content = f.read()
        base_dir = os.path.dirname(os.path.abspath(descriptor_path))
        return self.parse_from_string(content, base_dir=base_dir)

    def parse_from_string(self, content: str, base_dir: str = ".") -> ImageDescriptor:
        """
        Parses a descriptor from a YAML or JSON string.

        :param content: Descriptor text.
        :param base_dir: Directory relative paths are resolved against.
        :return: The resolved image descriptor.
        :raises ValueError: If the document is not a mapping or fails validation.
        """
        content = EnvironmentInterpolator.interpolate(content, self.context)
        data = yaml.safe_load(content)
        if not isinstance(data, dict):
            raise ValueError("Image descriptor must be a mapping")
        if not data.get('name'):
            raise ValueError("Image descriptor has no name")

        try:
            return ImageDescriptor(
                name=str(data['name']),
                tag=str(data.get('tag') or 'latest'),
                layers=[self._parse_layer(layer, base_dir) for layer in data.get('layers') or []],
                config=self._parse_config(data.get('config') or {}),
                wasm_path=self._resolve(data.get('wasm'), base_dir),
            )
        except (ValidationError, KeyError, AttributeError) as e:
            raise ValueError(f"Invalid image descriptor: {e}") from e

    def _parse_layer(self, spec: Any, base_dir: str) -> Layer:
        if isinstance(spec, str):
            return Layer(digest="", path=self._resolve(spec, base_dir))
        return Layer(
            digest=spec.get('digest', ''),
            path=self._resolve(spec['path'], base_dir),
            size=spec.get('size', 0),
            media_type=spec.get('media_type', Layer.model_fields['media_type'].default),
        )

    def _parse_config(self, spec: Dict[str, Any]) -> ImageConfig:
        env = spec.get('env', [])
        if isinstance(env, dict):
            env = [f"{k}={v}" for k, v in env.items()]
        return ImageConfig(
            env=self._to_list(env),
            cmd=self._to_list(spec.get('cmd')),
            entrypoint=self._to_list(spec.get('entrypoint')),
            workdir=spec.get('workdir') or "/",
            exposed_ports=[str(p) for p in self._to_list(spec.get('exposed_ports'))],
        )

    @staticmethod
    def _resolve(path: Optional[str], base_dir: str) -> Optional[str]:
        if not path:
            return None
        return os.path.abspath(os.path.join(base_dir, path))

    @staticmethod
    def _to_list(val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]
