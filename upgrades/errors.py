import typing
from enum import Enum

#
# Components
#

VALIDATOR = "validator"
DEPLOYER = "deployer"
PROXY_CONTROLLER = "proxy-controller"
ORCHESTRATOR = "orchestrator"
ARTIFACTS = "artifacts"
REGISTRY = "registry"


class UpgradeError(Exception):
    """Base class for every error surfaced by an upgrade or deployment."""

    component = ORCHESTRATOR
    retryable = False

    def __init__(self, *args, component: typing.Optional[str] = None):
        super().__init__(*args)
        if component is not None:
            self.component = component

    def to_dict(self) -> typing.Dict[str, typing.Any]:
        """Structured form of the error, as printed by the CLI."""
        return {
            "error": self.__class__.__name__,
            "component": self.component,
            "retryable": self.retryable,
            "message": str(self),
        }


# Layout


class LayoutIssue(Enum):
    TYPE_MISMATCH = "type-mismatch"
    REORDERED = "reordered"
    REMOVED = "removed"


class LayoutError(UpgradeError):
    """Raised when a new storage layout would corrupt persisted state."""

    component = VALIDATOR

    def __init__(
        self,
        index: int,
        old_type: typing.Optional[str],
        new_type: typing.Optional[str],
        reason: LayoutIssue = LayoutIssue.TYPE_MISMATCH,
        label: typing.Optional[str] = None,
    ):
        self.index = index
        self.old_type = old_type
        self.new_type = new_type
        self.reason = reason
        self.label = label
        super().__init__(self._describe())

    def _describe(self) -> str:
        name = f" '{self.label}'" if self.label else ""
        if self.reason == LayoutIssue.REMOVED:
            return f"Storage variable{name} ({self.old_type}) at index {self.index} was removed"
        if self.reason == LayoutIssue.REORDERED:
            return f"Storage variable{name} at index {self.index} changed position"
        return (
            f"Storage variable{name} at index {self.index} changed type "
            f"from {self.old_type} to {self.new_type}"
        )

    def to_dict(self) -> typing.Dict[str, typing.Any]:
        result = super().to_dict()
        result.update(
            index=self.index,
            old_type=self.old_type,
            new_type=self.new_type,
            reason=self.reason.value,
        )
        return result


# Deployment


class DeployError(UpgradeError):
    component = DEPLOYER


class NetworkUnavailable(DeployError):
    """The network could not be reached or did not confirm in time; safe to retry."""

    retryable = True


class CompilationInvalid(DeployError):
    """The artifact's bytecode cannot be published; never retried."""


# Proxy


class ProxyError(UpgradeError):
    component = PROXY_CONTROLLER


class Unauthorized(ProxyError):
    def __init__(self, proxy: str, caller: str, admin: str):
        self.proxy = proxy
        self.caller = caller
        self.admin = admin
        super().__init__(f"{caller} is not the admin of proxy {proxy} (admin is {admin})")


class AlreadyInitialized(ProxyError):
    pass


class NotInitialized(ProxyError):
    pass


class ProxyNotFound(ProxyError):
    pass


class TransactionFailed(ProxyError):
    """The proxy transaction was mined but did not take effect."""


# Orchestration


class ArtifactNotFound(UpgradeError):
    component = ARTIFACTS


class UpgradeCancelled(UpgradeError):
    """The caller abandoned the upgrade before the proxy was repointed."""


class LeaseUnavailable(UpgradeError):
    """Another upgrade currently holds the lease for this proxy."""

    retryable = True


class RegistryConflict(UpgradeError):
    """An artifact identifier is already registered at a different address."""

    component = REGISTRY
