__all__ = ["floatX"]

__version__ = '0.1.0'

import numpy as np
from rasterserve.logger import logger_setup
import logging
logger = logging.getLogger('rasterservelog')

logger_setup()

floatX = np.float32  # dtype of every tensor that is fed into a graph
