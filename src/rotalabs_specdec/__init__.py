"""rotalabs-specdec - Speculative decoding for autoregressive models.

Provides:
- Draft-propose / batch-verify / accept-reject generation loop
- Exact target-distribution sampling with temperature, top-k and top-p
- Incremental cache bookkeeping with rollback to the accepted prefix
- Model adapters for Hugging Face transformers and plain callables

Example:
    >>> from rotalabs_specdec import (
    ...     GenerationConfig, HFModelAdapter, SpeculativeGenerator,
    ... )
    >>>
    >>> draft = HFModelAdapter(draft_model)
    >>> target = HFModelAdapter(target_model)
    >>> generator = SpeculativeGenerator(draft, target)
    >>>
    >>> config = GenerationConfig(gamma=4, temperature=0.8, max_new_tokens=128)
    >>> result = generator.generate(prompt_ids, config)
    >>> print(result.metrics)
"""

import logging

from rotalabs_specdec._version import __version__

# Errors
from rotalabs_specdec.errors import (
    SpeculativeDecodingError,
    GenerationError,
    InvalidConfig,
    VocabularyMismatch,
    ContextTooLong,
    ModelAdapterFailure,
    DegenerateResidual,
    InvariantViolation,
)

# Speculative decoding
from rotalabs_specdec.speculative import (
    Distribution,
    RandomSource,
    apply_sampling_policy,
    GenerationConfig,
    GenerationMetrics,
    GenerationResult,
    IncrementalCache,
    ModelAdapter,
    HFModelAdapter,
    CallableModelAdapter,
    SpeculativeGenerator,
    GenerationSession,
    speculative_decode,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Version
    "__version__",
    # Errors
    "SpeculativeDecodingError",
    "GenerationError",
    "InvalidConfig",
    "VocabularyMismatch",
    "ContextTooLong",
    "ModelAdapterFailure",
    "DegenerateResidual",
    "InvariantViolation",
    # Distributions and sampling
    "Distribution",
    "RandomSource",
    "apply_sampling_policy",
    # Configuration
    "GenerationConfig",
    "GenerationMetrics",
    "GenerationResult",
    # Models
    "IncrementalCache",
    "ModelAdapter",
    "HFModelAdapter",
    "CallableModelAdapter",
    # Generation
    "SpeculativeGenerator",
    "GenerationSession",
    "speculative_decode",
]
