"""Image references to pull through containerd, and whether each pull should work."""

from dataclasses import dataclass
from os import getenv
from os.path import dirname
from os.path import join as joinPath
from typing import Optional

from jsonschema import validate
from yaml import safe_load as loadYaml

CASES_PATH = joinPath(dirname(__file__), 'cases.yaml')
SCHEMA_PATH = joinPath(dirname(__file__), 'cases.schema.yaml')

# Host serving the images, e.g. a locally running redirector.
REGISTRY = getenv('E2E_REGISTRY', 'registry.k8s.io')


@dataclass(kw_only=True)
class PullCase:
    name: str
    image: str
    tag: Optional[str] = None
    digest: Optional[str] = None
    expectSuccess: bool = True

    def ref(self, registry: str = None) -> str:
        """Return the full image reference, e.g. `registry.k8s.io/pause:3.10`."""
        ref = f'{registry or REGISTRY}/{self.image}'
        if self.tag is not None:
            ref += f':{self.tag}'
        if self.digest is not None:
            ref += f'@{self.digest}'
        return ref


def loadCases(path: str = CASES_PATH, schemaPath: str = SCHEMA_PATH) -> list[PullCase]:
    """
    Load, validate, and return the pull cases in file order.

    Each case needs at least a tag or a digest,
    and case names must be unique because they become sub-test names.
    """
    with open(schemaPath, 'r') as file:
        schema = loadYaml(file)
    with open(path, 'r') as file:
        rawCases = loadYaml(file)

    validate(instance=rawCases, schema=schema)

    cases = []
    names = set()
    for raw in rawCases['cases']:
        case = PullCase(
            name=raw['name'],
            image=raw['image'],
            tag=raw.get('tag'),
            digest=raw.get('digest'),
            expectSuccess=raw.get('expect-success', True),
        )
        if case.name in names:
            raise ValueError(f'Duplicate pull case {case.name}')
        names.add(case.name)
        cases.append(case)
    return cases
