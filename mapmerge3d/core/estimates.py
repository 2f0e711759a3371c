"""
Pairwise transform estimates between maps
"""

import numpy as np
from typing import Dict, Iterable, List, Optional


def is_sentinel(transform: Optional[np.ndarray]) -> bool:
    """True if transform is missing (None) or the all-zero failure matrix"""
    if transform is None:
        return True
    return not np.any(transform)


class TransformEstimate:
    """Result of one attempted alignment between two maps"""
    
    def __init__(
        self,
        source_idx: int,
        target_idx: int,
        transform: Optional[np.ndarray] = None,
        confidence: float = 0.0
    ):
        """
        Args:
            source_idx: Index of the map being aligned
            target_idx: Index of the map it is aligned to (source_idx < target_idx)
            transform: 4x4 matrix mapping source frame into target frame,
                None (or a zero matrix) if no alignment was found
            confidence: Inverse mean residual, higher is better
        """
        if source_idx == target_idx:
            raise ValueError(f"Estimate needs two different maps, got {source_idx} twice")
        if source_idx > target_idx:
            raise ValueError(
                f"source_idx must be lower than target_idx ({source_idx} > {target_idx})"
            )
        
        self.source_idx = int(source_idx)
        self.target_idx = int(target_idx)
        if is_sentinel(transform):
            self.transform = None
            self.confidence = 0.0
        else:
            self.transform = np.asarray(transform, dtype=np.float64).reshape(4, 4)
            self.confidence = float(confidence)
    
    @classmethod
    def failed(cls, source_idx: int, target_idx: int) -> 'TransformEstimate':
        """Estimate for a pair where registration did not succeed"""
        return cls(source_idx, target_idx)
    
    @property
    def is_valid(self) -> bool:
        return self.transform is not None
    
    @property
    def nodes(self):
        return self.source_idx, self.target_idx
    
    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            'source_idx': self.source_idx,
            'target_idx': self.target_idx,
            'transform': self.transform.tolist() if self.is_valid else None,
            'confidence': self.confidence
        }
    
    @classmethod
    def from_dict(cls, data: Dict) -> 'TransformEstimate':
        """Create from dictionary"""
        transform = data.get('transform')
        return cls(
            source_idx=data['source_idx'],
            target_idx=data['target_idx'],
            transform=np.array(transform, dtype=np.float64) if transform is not None else None,
            confidence=data.get('confidence', 0.0)
        )
    
    def __repr__(self):
        status = f"confidence={self.confidence:.3f}" if self.is_valid else "failed"
        return f"TransformEstimate({self.source_idx} -> {self.target_idx}, {status})"


def number_of_nodes(estimates: Iterable[TransformEstimate]) -> int:
    """Number of map indices spanned by the estimates (highest index + 1)"""
    highest = -1
    for est in estimates:
        highest = max(highest, est.target_idx)
    return highest + 1


def valid_estimates(
    estimates: Iterable[TransformEstimate],
    confidence_threshold: float = 0.0
) -> List[TransformEstimate]:
    """Estimates with a transform and confidence at or above the threshold"""
    return [
        est for est in estimates
        if est.is_valid and est.confidence >= confidence_threshold
    ]
