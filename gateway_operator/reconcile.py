"""
The ReconcileManager runs an individual reconcile of a Managed Resource and
maps its outcome, including errors, to a requeue decision
"""

# Standard
from dataclasses import dataclass, field
from typing import Optional, Type, Union
import abc
import base64
import datetime
import uuid

# First Party
import alog

# Local
from . import config
from .deploy_manager import DeployManagerBase, OpenshiftDeployManager
from .exceptions import ConflictError, ExpectedError, FatalError
from .registry import KindRegistry

log = alog.use_channel("RECON")


## Data models #################################################################


@dataclass
class RequeueParams:
    """RequeueParams holds parameters for requeue request"""

    requeue_after: datetime.timedelta = field(
        default_factory=lambda: datetime.timedelta(
            seconds=float(config.requeue_after_seconds)
        )
    )

    @classmethod
    def immediate(cls) -> "RequeueParams":
        """Requeue without backoff so the next pass re-reads fresh state"""
        return cls(
            requeue_after=datetime.timedelta(
                seconds=float(config.conflict_requeue_seconds)
            )
        )


@dataclass
class ReconciliationResult:
    """ReconciliationResult is the result of a reconciliation"""

    # Flag to control requeue of current reconcile request
    requeue: bool
    # Parameters for requeue request
    requeue_params: RequeueParams = field(default_factory=RequeueParams)
    # The exception that ended the reconcile, if any
    exception: Exception = None

    @classmethod
    def done(cls) -> "ReconciliationResult":
        """The resource is converged, wait for the next change"""
        return cls(requeue=False)

    @classmethod
    def requeue_now(cls) -> "ReconciliationResult":
        """Something was written, reconcile again to observe the result"""
        return cls(requeue=True, requeue_params=RequeueParams.immediate())


## Reconciler ##################################################################


class Reconciler(abc.ABC):
    """Interface of the reconcilers run by the ReconcileManager"""

    # The kind of Managed Resource this reconciler handles
    KIND: str = None

    def __init__(self, deploy_manager: DeployManagerBase):
        self.deploy_manager = deploy_manager

    @abc.abstractmethod
    def reconcile(self, namespace: str, name: str) -> ReconciliationResult:
        """Run one reconcile pass for the named resource. Implementations read
        the resource fresh and may raise any of the library's exceptions.
        """


RECONCILER_INFO = Union[Type[Reconciler], Reconciler]

## ReconcileManager ############################################################


class ReconcileManager:
    """This class manages reconciliations. Its primary function is to run a
    Reconciler against a resource with the current cluster state via a
    DeployManager.
    """

    def __init__(
        self,
        deploy_manager: Optional[DeployManagerBase] = None,
        registry: Optional[KindRegistry] = None,
    ):
        """
        Args:
            deploy_manager:  Optional[DeployManagerBase]
                Deploy manager to use. If not given, a live cluster client is
                created on first use.
            registry:  Optional[KindRegistry]
                The kind registry handed to a created deploy manager
        """
        self._deploy_manager = deploy_manager
        self._registry = registry

    @property
    def deploy_manager(self) -> DeployManagerBase:
        if self._deploy_manager is None:
            log.debug("Setting up live deploy manager")
            self._deploy_manager = OpenshiftDeployManager(registry=self._registry)
        return self._deploy_manager

    @classmethod
    def generate_id(cls) -> str:
        """Generate a short id used to correlate the logs of one reconcile"""
        uuid4 = uuid.uuid4()
        return base64.urlsafe_b64encode(uuid4.bytes).decode("ascii").strip("=")[:8]

    def setup_reconciler(self, reconciler_info: RECONCILER_INFO) -> Reconciler:
        if isinstance(reconciler_info, Reconciler):
            return reconciler_info
        return reconciler_info(self.deploy_manager)

    def reconcile(
        self, reconciler_info: RECONCILER_INFO, resource: dict
    ) -> ReconciliationResult:
        """Run the reconciler against the resource. Exceptions propagate.

        Args:
            reconciler_info:  RECONCILER_INFO
                A Reconciler class constructed with this manager's deploy
                manager, or an already constructed Reconciler
            resource:  dict
                The resource, or at least its metadata name and namespace

        Returns:
            reconcile_result:  ReconciliationResult
                The result of the reconcile
        """
        metadata = resource.get("metadata", {})
        reconciler = self.setup_reconciler(reconciler_info)
        log.info(
            "Reconciling %s %s/%s [%s]",
            resource.get("kind", reconciler.KIND),
            metadata.get("namespace"),
            metadata.get("name"),
            self.generate_id(),
        )
        return reconciler.reconcile(metadata.get("namespace"), metadata.get("name"))

    def safe_reconcile(
        self, reconciler_info: RECONCILER_INFO, resource: dict
    ) -> ReconciliationResult:
        """Run reconcile and map any error to a requeue decision:

        * ConflictError: requeue with no backoff, nothing recorded
        * other ExpectedErrors: requeue after the default backoff
        * FatalErrors and unknown errors: requeue after the default backoff,
          logged as failures

        Returns:
            reconcile_result:  ReconciliationResult
                The result of the reconcile
        """
        try:
            return self.reconcile(reconciler_info, resource)

        except ConflictError as exc:
            log.debug("Conflict during reconcile, requeueing: %s", exc)
            return ReconciliationResult(
                requeue=True, requeue_params=RequeueParams.immediate()
            )

        except ExpectedError as exc:
            log.info("Requeuing after expected error: %s", exc)
            error = exc

        except FatalError as exc:
            log.warning("Handling caught error in reconcile: %s", exc, exc_info=True)
            error = exc

        # Capture all generic exceptions
        except Exception as exc:  # pylint: disable=broad-except
            log.error("Unexpected error in reconcile: %s", exc, exc_info=True)
            error = exc

        return ReconciliationResult(
            requeue=True, requeue_params=RequeueParams(), exception=error
        )
