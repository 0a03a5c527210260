"""Speculative decoding.

A cheap draft model proposes several tokens, the target model verifies them
in one pass, and acceptance-rejection sampling keeps the output distributed
exactly as the target model's.

Components:
    - Distribution / sampling: probability vectors and the temperature,
      top-k and top-p sampling policy
    - Adapters: the model interface, with Hugging Face and callable backends
    - Proposer / verifier: the draft and target passes of a round
    - Acceptance: rejection sampling with residual resampling
    - Reconcile: cache truncation to the committed prefix
    - Core: the per-request generation loop

Author: Rotalabs Research <research@rotalabs.ai>
"""

from rotalabs_specdec.speculative.distribution import (
    RESIDUAL_MASS_EPSILON,
    Distribution,
)

from rotalabs_specdec.speculative.rng import RandomSource

from rotalabs_specdec.speculative.sampling import (
    apply_sampling_policy,
    apply_sampling_policy_batch,
    sample_from_logits,
)

from rotalabs_specdec.speculative.config import (
    GenerationConfig,
    GenerationMetrics,
    GenerationResult,
)

from rotalabs_specdec.speculative.cache import (
    IncrementalCache,
    kv_cache_length,
    trim_kv_cache,
)

from rotalabs_specdec.speculative.adapters import (
    ModelAdapter,
    HFModelAdapter,
    CallableModelAdapter,
)

from rotalabs_specdec.speculative.proposer import (
    Proposal,
    ProposalBatch,
    propose,
)

from rotalabs_specdec.speculative.verifier import (
    Verification,
    verify,
)

from rotalabs_specdec.speculative.acceptance import (
    Resolution,
    acceptance_probability,
    accept_probabilities,
    resolve,
)

from rotalabs_specdec.speculative.reconcile import (
    reconcile,
    rollback,
)

from rotalabs_specdec.speculative.core import (
    LoopState,
    RoundOutcome,
    GenerationSession,
    SpeculativeGenerator,
    speculative_decode,
)

__all__ = [
    # Distributions and sampling
    "RESIDUAL_MASS_EPSILON",
    "Distribution",
    "RandomSource",
    "apply_sampling_policy",
    "apply_sampling_policy_batch",
    "sample_from_logits",
    # Configuration classes
    "GenerationConfig",
    "GenerationMetrics",
    "GenerationResult",
    # Caches
    "IncrementalCache",
    "kv_cache_length",
    "trim_kv_cache",
    # Model adapters
    "ModelAdapter",
    "HFModelAdapter",
    "CallableModelAdapter",
    # Round stages
    "Proposal",
    "ProposalBatch",
    "propose",
    "Verification",
    "verify",
    "Resolution",
    "acceptance_probability",
    "accept_probabilities",
    "resolve",
    "reconcile",
    "rollback",
    # Generation loop
    "LoopState",
    "RoundOutcome",
    "GenerationSession",
    "SpeculativeGenerator",
    "speculative_decode",
]
