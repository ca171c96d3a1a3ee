"""Exceptions raised by the testnet framework.

Setup errors (`EnvironmentUnavailableError`, `StartupError`) abort the cluster creation and any
partially created resources are rolled back before they are raised. Steady-state errors
(`TestnetTimeoutError`, `FundingError`) are left for the test to handle. `TeardownError` is raised
only after forced removal was attempted.
"""

import typing as tp

if tp.TYPE_CHECKING:
    from ephemeral_testnet.utils import aptos_cli


class TestnetError(Exception):
    """Base class for all errors of the testnet framework."""

    # Don't let pytest try to collect the exception classes as tests
    __test__ = False

    kind: tp.ClassVar[str] = "TestnetError"


class EnvironmentUnavailableError(TestnetError):
    """The container engine or another required tool is not reachable."""

    kind = "EnvironmentUnavailable"


class StartupError(TestnetError):
    kind = "StartupError"


class InvalidClusterSpecError(StartupError, ValueError):
    kind = "StartupError"


class ChainIdMismatchError(StartupError):
    kind = "StartupError"


class TestnetTimeoutError(TestnetError, TimeoutError):
    kind = "TimeoutError"


class ReadinessTimeoutError(TestnetTimeoutError):
    """Some members didn't become ready in time. Their indices are in `unready_members`."""

    def __init__(self, msg: str, *, unready_members: tp.Iterable[int] = ()) -> None:
        super().__init__(msg)
        self.unready_members = list(unready_members)


class BlocksTimeoutError(TestnetTimeoutError):
    pass


class FundingError(TestnetError):
    """Bootstrap or faucet funding failed.

    The `result` attribute holds the outcome of the on-chain transaction when it is available.
    """

    kind = "FundingError"

    def __init__(self, msg: str, *, result: "aptos_cli.TransferResult | None" = None) -> None:
        super().__init__(msg)
        self.result = result


class AlreadyBootstrappedError(FundingError):
    pass


class TeardownError(TestnetError):
    """Some cluster resources could not be reclaimed, even with forced removal."""

    kind = "TeardownError"

    def __init__(self, msg: str, *, failed_resources: tp.Iterable[str] = ()) -> None:
        super().__init__(msg)
        self.failed_resources = list(failed_resources)


class CLIError(TestnetError):
    """Invocation of an external command failed."""

    kind = "CLIError"

    def __init__(self, msg: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(msg)
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeoutError(CLIError):
    """External command didn't finish in time and was killed."""


class NodeApiError(TestnetError):
    """Member REST API is not reachable or returned unexpected data."""

    kind = "NodeApiError"

    def __init__(self, msg: str, *, status_code: int | None = None) -> None:
        super().__init__(msg)
        self.status_code = status_code
