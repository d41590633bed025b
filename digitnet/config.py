"""
config.py
~~~~~~~~~

Runtime settings read from environment variables.

    DIGITNET_MODEL_DIR      directory of the snapshot database (models)
    DIGITNET_TRAIN_CSV      training set served to API training jobs
    DIGITNET_TEST_CSV       held-out set used for accuracy reports
    DIGITNET_NUM_CLASSES    number of output classes (10)
    DIGITNET_DEFAULT_SIZES  architecture used when none is given (784,30,10)
    DIGITNET_CLEANUP_DAYS   age after which stored networks are removed (2)
    PORT                    API server port (8000)
    FLASK_ENV               'production' reduces log noise
    LOG_LEVEL               logging level name (INFO)
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from digitnet.exceptions import InvalidArchitecture


def parse_sizes(text: str) -> List[int]:
    """
    Parse an architecture such as ``"784,30,10"``.

    Raises:
        InvalidArchitecture: If an entry is not an integer
    """
    try:
        return [int(part) for part in text.split(',') if part.strip()]
    except ValueError:
        raise InvalidArchitecture(
            f"Architecture must be comma-separated integers, got {text!r}"
        ) from None


@dataclass
class Settings:
    model_dir: str = 'models'
    train_csv: Optional[str] = None
    test_csv: Optional[str] = None
    num_classes: int = 10
    default_sizes: List[int] = field(default_factory=lambda: [784, 30, 10])
    cleanup_days: int = 2
    port: int = 8000
    log_level: str = 'INFO'
    is_production: bool = False

    @classmethod
    def from_env(cls) -> 'Settings':
        return cls(
            model_dir=os.getenv('DIGITNET_MODEL_DIR', 'models'),
            train_csv=os.getenv('DIGITNET_TRAIN_CSV') or None,
            test_csv=os.getenv('DIGITNET_TEST_CSV') or None,
            num_classes=int(os.getenv('DIGITNET_NUM_CLASSES', '10')),
            default_sizes=parse_sizes(
                os.getenv('DIGITNET_DEFAULT_SIZES', '784,30,10')
            ),
            cleanup_days=int(os.getenv('DIGITNET_CLEANUP_DAYS', '2')),
            port=int(os.getenv('PORT', '8000')),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            is_production=os.getenv('FLASK_ENV') == 'production'
        )
