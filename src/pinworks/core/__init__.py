"""Core functionality for bulk pin generation.

This package holds everything below the HTTP layer:

- **PinworksConfig**: Configuration management using Pydantic Settings
- **Provider adapters**: One adapter per AI provider, discovered through
  ``provider_registry``
- **Stores**: SQLite persistence for jobs, credentials, templates and users
- **Pipeline**: Row processor, job orchestrator and the in-process job queue
- **Post-processing**: Template compositing and metadata embedding

Architecture Overview
---------------------
1. **Configuration Layer** (config.py):
   - Environment-based configuration, PINWORKS_ prefix
   - Automatic directory creation

2. **Provider Layer** (providers/):
   - ``ProviderAdapterBase`` defines the four pipeline stages
   - OpenAI, DeepSeek, fal.ai and BytePlus ARK implementations
   - Registry pattern for provider discovery

3. **Persistence Layer** (database.py, job_store.py, credentials.py,
   templates.py, permissions.py)

4. **Pipeline Layer** (row_processor.py, orchestrator.py, job_queue.py)

5. **Support Utilities**:
   - storage.py: artifact paths, uploads and downloads
   - compositor.py: Pillow template rendering
   - metadata.py: EXIF/PNG metadata embedding
   - exports.py: ZIP and CSV exports

Usage Example
-------------
    from pinworks.core import config, provider_registry

    print(provider_registry.list_available())
"""

# Import providers to ensure they're registered
from pinworks.core.config import PinworksConfig, config
from pinworks.core.providers import ProviderAdapterBase, ProviderRegistry, provider_registry

__all__ = [
    "ProviderAdapterBase",
    "ProviderRegistry",
    "provider_registry",
    "PinworksConfig",
    "config",
]
