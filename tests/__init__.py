from collections.abc import Mapping, Sequence
from typing import IO, Any, Optional, Union

import click.core
import click.testing


class CliRunner(click.testing.CliRunner):
    def invoke(
            self,
            cli: click.core.Command,
            args: Optional[Union[str, Sequence[str]]] = None,
            input: Optional[Union[str, bytes, IO[Any]]] = None,
            env: Optional[Mapping[str, Optional[str]]] = None,
            catch_exceptions: bool = True,
            color: bool = False,
            **extra: Any) -> click.testing.Result:
        # Keep the environment of the test runner from changing colors
        # and debug levels of the invoked command.
        env = {
            'NO_COLOR': None,
            'HOSTRIG_NO_COLOR': None,
            'HOSTRIG_FORCE_COLOR': None,
            'HOSTRIG_DEBUG': None,
            **(env or {})
            }

        return super().invoke(
            cli,
            args=args,
            input=input,
            env=env,
            catch_exceptions=catch_exceptions,
            color=color,
            **extra)
