"""
Exceptions raised by the anomaly detection engine.

Only programmer errors (calling into a component in the wrong state, asking
for an unknown model type) and training failures are raised. Bad input data
is filtered or reported as "no anomaly" instead.
"""


class AnomalyEngineError(Exception):
    """Base class for all engine errors"""


class DetectorStateError(AnomalyEngineError):
    """Operation is not allowed in the detector's current state"""


class NotInitializedError(DetectorStateError):
    """Operation invoked before initialize()"""

    def __init__(self, component: str = "Detector"):
        super().__init__(f"{component} not initialized. Call initialize() first.")
        self.component = component


class ModelNotInitializedError(AnomalyEngineError):
    """Model used before initialize()"""

    def __init__(self, model_name: str):
        super().__init__(f"Model '{model_name}' not initialized")
        self.model_name = model_name


class TrainingError(AnomalyEngineError):
    """One or more models failed to train.

    The failing models keep their previously trained state.
    """

    def __init__(self, failures: dict[str, str]):
        details = ", ".join(f"{model_id}: {error}" for model_id, error in failures.items())
        super().__init__(f"Training failed for {len(failures)} model(s): {details}")
        self.failures = failures


class InvalidModelTypeError(AnomalyEngineError, ValueError):
    """Unknown model type requested from the registry"""
