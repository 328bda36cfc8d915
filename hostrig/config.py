"""
Inventory files.

An inventory describes hosts of a run and the options shared by them:

.. code-block:: yaml

    options:
        hypervisor: vagrant_virtualbox
        timesync: true
        run-in-parallel: [configure]

    hosts:
      - name: web
        platform: el-7-x86_64
        box: centos/7
        timesync: false

Keys of a host other than ``name`` and ``platform`` become its options,
overriding the shared ones.
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from hostrig.container import container, key_to_option, option_to_key
from hostrig.host import Host
from hostrig.log import Logger
from hostrig.options import GlobalOptions
from hostrig.utils import FileError, SpecificationError, yaml_to_dict


class HostConfig(BaseModel):
    """ A single host of an inventory """

    model_config = ConfigDict(extra='allow')

    name: str = Field(min_length=1)
    platform: str = ''

    def to_host(self) -> Host:
        options: dict[str, Any] = {
            option_to_key(key): value
            for key, value in (self.model_extra or {}).items()
            }

        return Host(name=self.name, platform=self.platform, options=options)


class InventoryConfig(BaseModel):
    """ Content of an inventory file """

    model_config = ConfigDict(
        alias_generator=key_to_option,
        populate_by_name=True,
        extra='forbid',
        )

    options: GlobalOptions = Field(default_factory=GlobalOptions)
    hosts: list[HostConfig] = Field(min_length=1)

    @model_validator(mode='after')
    def _unique_host_names(self) -> 'InventoryConfig':
        seen: set[str] = set()

        for host in self.hosts:
            if host.name in seen:
                raise ValueError(f"Host '{host.name}' is listed more than once.")

            seen.add(host.name)

        return self


@container
class Inventory:
    """ Hosts and options loaded from an inventory file """

    hosts: list[Host]
    options: GlobalOptions


def parse_inventory(data: Any, origin: str = 'inventory') -> Inventory:
    """
    Create inventory from already loaded data.

    :param origin: where the data came from, for error messages.
    :raises SpecificationError: when the data are not a valid inventory.
    """

    try:
        config = InventoryConfig.model_validate(data)

    except ValidationError as error:
        raise SpecificationError(f"Invalid inventory in '{origin}'.") from error

    return Inventory(
        hosts=[host.to_host() for host in config.hosts],
        options=config.options)


def load_inventory(path: Path, logger: Logger) -> Inventory:
    """
    Load inventory from a YAML file.

    :raises FileError: when the file cannot be read.
    :raises SpecificationError: when the file is not a valid inventory.
    """

    logger.debug(f"Load inventory from '{path}'.")

    try:
        content = path.read_text()

    except OSError as error:
        raise FileError(f"Failed to read inventory '{path}'.") from error

    inventory = parse_inventory(yaml_to_dict(content), origin=str(path))

    logger.debug(
        f"Loaded {len(inventory.hosts)} hosts from '{path}'",
        ', '.join(host.name for host in inventory.hosts))

    return inventory
