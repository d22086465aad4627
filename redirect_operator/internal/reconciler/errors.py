import re


def _snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


class ReconcileError(Exception):
    """A failed API call during apply or cleanup. The API error is kept as `source`."""

    message = "Reconciliation failed"

    def __init__(self, source: Exception):
        self.source = source
        super().__init__(f"{self.message}: {source}")

    def metric_label(self) -> str:
        return _snake_case(type(self).__name__)


class RoutingObjectCreateFailed(ReconcileError):
    message = "Failed to create Ingress"


class RoutingObjectDeleteFailed(ReconcileError):
    message = "Failed to delete Ingress"


class StatusUpdateFailed(ReconcileError):
    message = "Failed to update RedirectStatus"


class FinalizerError(Exception):
    label = "finalizer"

    def metric_label(self) -> str:
        return self.label


class ApplyFailed(FinalizerError):
    def __init__(self, error: ReconcileError):
        self.error = error
        super().__init__(f"apply failed: {error}")

    def metric_label(self) -> str:
        return self.error.metric_label()


class CleanupFailed(FinalizerError):
    def __init__(self, error: ReconcileError):
        self.error = error
        super().__init__(f"cleanup failed: {error}")

    def metric_label(self) -> str:
        return self.error.metric_label()


class AddFinalizerFailed(FinalizerError):
    label = "add_finalizer"

    def __init__(self, source: Exception):
        self.source = source
        super().__init__(f"failed to add finalizer: {source}")


class RemoveFinalizerFailed(FinalizerError):
    label = "remove_finalizer"

    def __init__(self, source: Exception):
        self.source = source
        super().__init__(f"failed to remove finalizer: {source}")


class UnnamedObject(FinalizerError):
    label = "unnamed_object"

    def __init__(self):
        super().__init__("object has no name or namespace")


class InvalidFinalizer(FinalizerError):
    label = "invalid_finalizer"

    def __init__(self, finalizer: str):
        self.finalizer = finalizer
        super().__init__(f"invalid finalizer name: {finalizer!r}")
