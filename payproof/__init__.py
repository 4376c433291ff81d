from .batch_runner import BatchRunner
from .config_loader import VerificationConfig, load_verification_config
from .extraction_client import ExtractionClient
from .state_store import ProofStore
from .verifier import ProofVerifier

__all__ = [
    "BatchRunner",
    "ExtractionClient",
    "ProofStore",
    "ProofVerifier",
    "VerificationConfig",
    "load_verification_config",
]
