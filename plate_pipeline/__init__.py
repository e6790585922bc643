"""
plate-pipeline: ponte de filas entre a ingestão de imagens de placas,
o processo de predição e a publicação dos resultados.
"""

# Load .env file early (before settings are read)
from dotenv import load_dotenv

load_dotenv()

__version__ = "0.1.0"

from .worker_pool import ItemOutcome, PoolConfig, WorkerPool  # noqa: E402

__all__ = [
    "ItemOutcome",
    "PoolConfig",
    "WorkerPool",
]
