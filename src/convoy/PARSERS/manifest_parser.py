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
Parser turning compose-style YAML manifests into a validated Manifest.
"""
import logging
import os
import re
import shlex
from typing import Any, Dict, List, Optional

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..errors import ManifestError
from ..MODELS.manifest import (
    BuildSpec, Manifest, NetworkSpec, PortMapping, ServiceSpec, VolumeMount, VolumeSpec,
)
from ..UTILS.string_interpolation import EnvironmentInterpolator

LOG = logging.getLogger(__name__)

TOP_LEVEL_KEYS = {'name', 'version', 'services', 'networks', 'volumes'}
SERVICE_KEYS = {
    'image', 'build', 'command', 'ports', 'environment', 'env_file', 'depends_on',
    'networks', 'volumes', 'stop_grace_period', 'labels', 'restart',
}

_DURATION = re.compile(r'(\d+(?:\.\d+)?)(us|ms|s|m|h)')
_DURATION_UNITS = {'us': 1e-6, 'ms': 1e-3, 's': 1.0, 'm': 60.0, 'h': 3600.0}


def normalize_project_name(name: str) -> str:
    """
    Lowercases a project name and strips characters the runtime would reject.
    """
    return re.sub(r'[^a-z0-9_-]', '', name.lower())


class ManifestParser:
    """
    Parser for convoy.yml / docker-compose.yml files.
    The raw document never leaves this class; callers only see a Manifest.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None, project_name: Optional[str] = None):
        """
        Initializes the parser.

        :param context: Variables used for interpolation. Defaults to the process
            environment layered over a ``.env`` file next to the manifest.
        :param project_name: Project name used when the manifest has no ``name`` key.
        """
        self.context = context
        self.project_name = project_name

    def parse(self, manifest_path: str) -> Manifest:
        """
        Parses a manifest file from a path.

        :param manifest_path: Path to the manifest file.
        :return: The validated manifest.
        :raises ManifestError: If the file cannot be read or is invalid.
        """
        try:
            with open(manifest_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ManifestError(f"cannot read manifest {manifest_path}: {e}") from e
        base_dir = os.path.dirname(os.path.abspath(manifest_path))
        return self.parse_from_string(content, base_dir=base_dir)

    def parse_from_string(self, content: str, base_dir: Optional[str] = None) -> Manifest:
        """
        Parses a manifest from YAML text.

        :param content: YAML content of the manifest.
        :param base_dir: Directory relative paths (env files, .env, bind mounts) resolve against.
        :return: The validated manifest.
        """
        try:
            data = yaml.safe_load(content)
        # PyYAML raises ValueError for scalars that only look like timestamps
        except (yaml.YAMLError, ValueError) as e:
            raise ManifestError(f"invalid YAML: {e}") from e
        return self.parse_data(data, base_dir=base_dir)

    def parse_data(self, data: Any, base_dir: Optional[str] = None) -> Manifest:
        """
        Validates an already-loaded document into a Manifest.

        :param data: The loaded YAML document.
        :param base_dir: Directory relative paths resolve against. Defaults to the cwd.
        :return: The validated manifest.
        """
        base_dir = os.path.abspath(base_dir or os.getcwd())

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ManifestError("manifest must be a mapping at the top level")

        unknown = set(data) - TOP_LEVEL_KEYS
        if unknown:
            raise ManifestError(f"unsupported top-level keys: {', '.join(sorted(str(k) for k in unknown))}")

        try:
            data = EnvironmentInterpolator.interpolate_data(data, self._context(base_dir))
        except KeyError as e:
            raise ManifestError(f"interpolation failed: {e.args[0]}") from e

        services_data = data.get('services')
        if not services_data:
            raise ManifestError("no services defined")
        if not isinstance(services_data, dict):
            raise ManifestError("'services' must be a mapping")

        name = normalize_project_name(
            str(data.get('name') or self.project_name or os.path.basename(base_dir))
        )
        if not name:
            raise ManifestError("project name is empty after normalization")

        try:
            services = {}
            for svc_name, spec in services_data.items():
                services[str(svc_name)] = self._parse_service(str(svc_name), spec, base_dir)

            return Manifest(
                name=name,
                services=services,
                networks={
                    key: NetworkSpec(name=key, **self._resource_options(key, opts, 'network'))
                    for key, opts in self._mapping(data.get('networks'), 'networks').items()
                },
                volumes={
                    key: VolumeSpec(name=key, **self._resource_options(key, opts, 'volume'))
                    for key, opts in self._mapping(data.get('volumes'), 'volumes').items()
                },
            )
        except ValidationError as e:
            raise ManifestError(self._describe(e)) from e

    def _context(self, base_dir: str) -> Dict[str, str]:
        if self.context is not None:
            return self.context
        context = {}
        dotenv_path = os.path.join(base_dir, '.env')
        if os.path.isfile(dotenv_path):
            context.update({k: v or '' for k, v in dotenv_values(dotenv_path).items()})
        # Shell variables take precedence over .env
        context.update(os.environ)
        return context

    def _parse_service(self, name: str, spec: Any, base_dir: str) -> ServiceSpec:
        """
        Parses a single service definition.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :param base_dir: Directory env files resolve against.
        :return: A ServiceSpec instance.
        """
        if not isinstance(spec, dict):
            raise ManifestError(f"service '{name}' must be a mapping")

        unknown = set(spec) - SERVICE_KEYS
        if unknown:
            raise ManifestError(f"service '{name}' has unsupported keys: {', '.join(sorted(str(k) for k in unknown))}")

        if 'restart' in spec:
            LOG.debug("Ignoring restart policy of service %s", name)

        # Environment: env files first, explicit values override them
        environment: Dict[str, str] = {}
        for env_file in self._to_list(spec.get('env_file')):
            path = os.path.join(base_dir, str(env_file))
            if not os.path.isfile(path):
                raise ManifestError(f"service '{name}': env file {path} not found")
            environment.update({k: v or '' for k, v in dotenv_values(path).items()})
        environment.update(self._key_values(spec.get('environment'), name, 'environment'))

        build = spec.get('build')
        if isinstance(build, dict):
            if 'context' not in build:
                raise ManifestError(f"service '{name}': build requires a 'context'")
            build = BuildSpec(context=str(build['context']), dockerfile=build.get('dockerfile'))
        elif build is not None:
            build = BuildSpec(context=str(build))

        command = spec.get('command')
        if isinstance(command, str):
            try:
                command = shlex.split(command)
            except ValueError as e:
                raise ManifestError(f"service '{name}': invalid command: {e}") from e

        return ServiceSpec(
            name=name,
            image=spec.get('image'),
            build=build,
            command=[str(c) for c in self._to_list(command)],
            environment=environment,
            ports=self._parse_ports(name, spec.get('ports')),
            networks=list(self._names(spec.get('networks'), name, 'networks')),
            volumes=self._parse_volumes(name, spec.get('volumes')),
            depends_on=list(self._names(spec.get('depends_on'), name, 'depends_on')),
            stop_grace_period=self._parse_duration(name, spec.get('stop_grace_period')),
            labels=self._key_values(spec.get('labels'), name, 'labels'),
        )

    def _parse_ports(self, name: str, ports: Any) -> List[PortMapping]:
        """
        Parses ``ports`` entries: "container", "host:container", "ip:host:container",
        each optionally with a /tcp or /udp suffix and port ranges, or the long form.
        """
        mappings = []
        for entry in self._to_list(ports):
            try:
                if isinstance(entry, dict):
                    if entry.get('protocol', 'tcp') not in ('tcp', 'udp'):
                        raise ValueError(f"unknown protocol '{entry['protocol']}'")
                    published = entry.get('published')
                    mappings.append(PortMapping(
                        container=int(entry['target']),
                        host=int(published) if published is not None else None,
                        host_ip=entry.get('host_ip'),
                        protocol=entry.get('protocol', 'tcp'),
                    ))
                    continue

                text = str(entry)
                protocol = 'tcp'
                if '/' in text:
                    text, protocol = text.rsplit('/', 1)
                if protocol not in ('tcp', 'udp'):
                    raise ValueError(f"unknown protocol '{protocol}'")

                parts = text.split(':')
                if len(parts) == 1:
                    host_ip, host_part, container_part = None, None, parts[0]
                elif len(parts) == 2:
                    host_ip, (host_part, container_part) = None, parts
                elif len(parts) == 3:
                    host_ip, host_part, container_part = parts
                else:
                    raise ValueError("too many ':' separators")

                container_ports = self._port_range(container_part)
                host_ports = self._port_range(host_part) if host_part else [None] * len(container_ports)
                if len(host_ports) != len(container_ports):
                    raise ValueError("host and container port ranges differ in length")

                for host, container in zip(host_ports, container_ports):
                    mappings.append(PortMapping(container=container, host=host,
                                                host_ip=host_ip or None, protocol=protocol))
            except (KeyError, ValueError, TypeError) as e:
                raise ManifestError(f"service '{name}': invalid port '{entry}': {e}") from e
        return mappings

    @staticmethod
    def _port_range(text: str) -> List[int]:
        if '-' in text:
            start, end = (int(p) for p in text.split('-', 1))
            if end < start:
                raise ValueError(f"invalid range {text}")
            return list(range(start, end + 1))
        return [int(text)]

    def _parse_volumes(self, name: str, volumes: Any) -> List[VolumeMount]:
        """
        Parses ``volumes`` entries: "target" for an anonymous volume,
        "source:target", "source:target:ro|rw", or the long form.
        """
        mounts = []
        for v in self._to_list(volumes):
            if isinstance(v, dict):
                if 'target' not in v:
                    raise ManifestError(f"service '{name}': volume mounts need a 'target'")
                mounts.append(VolumeMount(source=v.get('source'), target=v['target'],
                                          read_only=bool(v.get('read_only', False))))
                continue

            parts = str(v).split(':')
            if len(parts) == 1 and parts[0]:
                mounts.append(VolumeMount(target=parts[0]))
            elif len(parts) == 2:
                mounts.append(VolumeMount(source=parts[0], target=parts[1]))
            elif len(parts) == 3 and parts[2] in ('ro', 'rw'):
                mounts.append(VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == 'ro')))
            else:
                raise ManifestError(f"service '{name}': invalid volume '{v}'")
        return mounts

    def _parse_duration(self, name: str, value: Any) -> Optional[float]:
        """
        Accepts seconds as a number or a duration string such as "10s" or "1m30s".
        """
        if value is None:
            return None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        text = str(value).strip()
        if _DURATION.sub('', text) != '' or not text:
            raise ManifestError(f"service '{name}': invalid duration '{value}'")
        return sum(float(amount) * _DURATION_UNITS[unit] for amount, unit in _DURATION.findall(text))

    def _key_values(self, value: Any, name: str, field: str) -> Dict[str, str]:
        """
        Normalizes a mapping or a list of KEY=VALUE strings into a string mapping.
        """
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): '' if v is None else self._scalar(v) for k, v in value.items()}
        if isinstance(value, list):
            result = {}
            for item in value:
                key, sep, val = str(item).partition('=')
                result[key] = val if sep else ''
            return result
        raise ManifestError(f"service '{name}': '{field}' must be a mapping or a list")

    @staticmethod
    def _scalar(value: Any) -> str:
        # YAML booleans must come back the way compose spells them
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return str(value)

    def _names(self, value: Any, name: str, field: str) -> List[str]:
        """
        Reads a list of names, or the keys of the long mapping form.
        """
        if value is None:
            return []
        if isinstance(value, dict):
            return [str(k) for k in value]
        if isinstance(value, list):
            return [str(v) for v in value]
        raise ManifestError(f"service '{name}': '{field}' must be a list or a mapping")

    def _mapping(self, value: Any, field: str) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ManifestError(f"'{field}' must be a mapping")
        return {str(k): v for k, v in value.items()}

    def _resource_options(self, key: str, opts: Any, kind: str) -> Dict[str, Any]:
        if opts is None:
            return {}
        if not isinstance(opts, dict):
            raise ManifestError(f"{kind} '{key}' must be a mapping")
        return {
            'driver': opts.get('driver'),
            'external': bool(opts.get('external', False)),
        }

    def _to_list(self, val: Any) -> List[Any]:
        """
        Helper to ensure a value is a list.

        :param val: The value to convert.
        :return: A list.
        """
        if val is None:
            return []
        if isinstance(val, (list, tuple)):
            return list(val)
        return [val]

    @staticmethod
    def _describe(error: ValidationError) -> str:
        messages = []
        for err in error.errors():
            msg = err['msg']
            if msg.startswith('Value error, '):
                msg = msg[len('Value error, '):]
            loc = '.'.join(str(p) for p in err.get('loc', ()))
            messages.append(f"{loc}: {msg}" if loc else msg)
        return '; '.join(messages)
