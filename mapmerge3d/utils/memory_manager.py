"""
Memory and CPU resource utilities for the merge pipeline
"""

import psutil
import logging
import gc
from typing import Optional, Dict
from contextlib import contextmanager

logger = logging.getLogger(__name__)

GB = 1024 * 1024 * 1024


def default_worker_count() -> int:
    """Number of workers for pairwise estimation (physical cores, at least 1)"""
    count = psutil.cpu_count(logical=False) or psutil.cpu_count(logical=True)
    return max(1, count or 1)


class MemoryManager:
    """Track memory usage across pipeline stages"""
    
    def __init__(self):
        self._peak_usage_gb = 0.0
        self._checkpoints: Dict[str, float] = {}
    
    def get_memory_usage(self) -> float:
        """
        Get current process memory usage in GB
        
        Returns:
            Resident memory in GB (0.0 if it cannot be read)
        """
        try:
            usage_gb = psutil.Process().memory_info().rss / GB
        except psutil.Error as e:
            logger.warning(f"Could not get memory usage: {e}")
            return 0.0
        
        if usage_gb > self._peak_usage_gb:
            self._peak_usage_gb = usage_gb
        return usage_gb
    
    def get_available_memory(self) -> float:
        """Get available system memory in GB"""
        return psutil.virtual_memory().available / GB
    
    def get_peak_usage(self) -> float:
        """Get peak memory usage in GB"""
        return self._peak_usage_gb
    
    def checkpoint(self, name: str):
        """Record memory usage under a checkpoint name"""
        usage = self.get_memory_usage()
        self._checkpoints[name] = usage
        logger.debug(f"Memory checkpoint '{name}': {usage:.2f} GB")
    
    def get_checkpoint_diff(self, name: str) -> Optional[float]:
        """
        Get memory difference since checkpoint
        
        Returns:
            Memory difference in GB, or None if checkpoint doesn't exist
        """
        if name not in self._checkpoints:
            return None
        return self.get_memory_usage() - self._checkpoints[name]
    
    @contextmanager
    def track_operation(self, name: str):
        """
        Context manager to log memory usage of a pipeline stage
        
        Example:
            with memory_manager.track_operation("pairwise_estimation"):
                estimates = estimate_all_pairs(...)
        """
        self.checkpoint(name)
        try:
            yield
        finally:
            diff = self.get_checkpoint_diff(name)
            gc.collect()
            logger.debug(
                f"Operation '{name}': memory change {diff:+.2f} GB "
                f"(peak {self._peak_usage_gb:.2f} GB)"
            )
