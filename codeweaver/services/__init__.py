"""Services package for Codeweaver"""

from .errors import (
    NarrativeError,
    GenerationError,
    OfflineError,
    GenerationTimeoutError,
    TransientServiceError,
    RateLimitError,
    NonRetryableGenerationError,
    ContentPolicyError,
    ParseError,
    SchemaError,
    ConceptCoverageError,
    LengthError,
    DurableStorageError,
)
from .cache_keys import derive_cache_key, canonical_request
from .concept_vocabulary import ConceptVocabulary
from .prompt_builder import PromptBuilder, render_output_format
from .validation_service import ContentValidator, clean_json_output
from .adaptive_rate_limiter import AdaptiveRateLimiter
from .foundry import FoundryTextGenerator, Completion
from .connectivity import StaticConnectivity, HttpConnectivityProbe
from .generation_client import GenerationClient
from .blob_storage import InMemoryBlobStore, LocalFileBlobStore, AzureBlobStore, create_blob_store
from .story_cache import StoryCache
from .story_history import StoryHistory
from .events import EventEmitter, narrative_events
from .logger import NarrativeLogger, init_logger
from .orchestrator import NarrativeOrchestrator, branch_request, continuation_request
