"""
Perceptual duplicate detection.

Detects:
1. Exact fingerprint matches (every prior submission sharing the hash)
2. Near matches (Hamming distance within the configured threshold)
"""

import io
import logging
from typing import List

import imagehash
from PIL import Image

from .config import Config
from .models import DuplicateMatch, DuplicateReport
from .store import ValidationStore

logger = logging.getLogger(__name__)

HASH_ALGORITHM = "dhash"


def compute_perceptual_hash(image_data: bytes, hash_size: int = 8) -> str:
    """Difference hash of the image; stable under recompression and resizing."""
    with Image.open(io.BytesIO(image_data)) as img:
        return str(imagehash.dhash(img.convert("RGB"), hash_size=hash_size))


def hamming_distance(hash1: str, hash2: str) -> int:
    return imagehash.hex_to_hash(hash1) - imagehash.hex_to_hash(hash2)


def similarity_percentage(hash1: str, hash2: str) -> float:
    """100 for identical fingerprints, falling linearly with Hamming distance."""
    bits = len(hash1) * 4
    if len(hash2) * 4 != bits:
        return 0.0
    return round(100.0 * (1 - hamming_distance(hash1, hash2) / bits), 1)


class DuplicateDetector:
    """Fingerprints proof images and consults the shared hash index."""

    def __init__(self, config: Config, store: ValidationStore):
        self.config = config
        self.store = store

    def fingerprint(self, image_data: bytes) -> str:
        return compute_perceptual_hash(image_data, self.config.duplicates.hash_size)

    def _near_matches(self, perceptual_hash: str, submission_id: str) -> List[DuplicateMatch]:
        max_distance = self.config.duplicates.near_match_max_distance
        if max_distance <= 0:
            return []

        matches = []
        for other_hash in self.store.indexed_hashes():
            if other_hash == perceptual_hash or len(other_hash) != len(perceptual_hash):
                continue
            if hamming_distance(perceptual_hash, other_hash) > max_distance:
                continue
            similarity = similarity_percentage(perceptual_hash, other_hash)
            for sighting in self.store.sightings(other_hash, exclude_submission_id=submission_id):
                matches.append(DuplicateMatch(similarity_percentage=similarity, **sighting))

        matches.sort(key=lambda m: m.similarity_percentage, reverse=True)
        return matches

    def check(self, image_data: bytes, submission_id: str) -> DuplicateReport:
        """Record this submission's fingerprint and report every prior submission sharing it."""
        perceptual_hash = self.fingerprint(image_data)
        upload_count = self.store.record_sighting(perceptual_hash, submission_id, HASH_ALGORITHM)

        exact = [
            DuplicateMatch(similarity_percentage=100.0, **sighting)
            for sighting in self.store.sightings(perceptual_hash, exclude_submission_id=submission_id)
        ]
        if exact:
            logger.info(f"Duplicate fingerprint {perceptual_hash} for {submission_id}: "
                        f"{len(exact)} prior submission(s), upload_count={upload_count}")
            return DuplicateReport(
                perceptual_hash=perceptual_hash,
                duplicate_detected=True,
                similarity_percentage=100.0,
                upload_count=upload_count,
                matches=exact,
            )

        near = self._near_matches(perceptual_hash, submission_id)
        if near:
            logger.info(f"Near-duplicate fingerprint for {submission_id}: "
                        f"{len(near)} match(es), best {near[0].similarity_percentage}%")
            return DuplicateReport(
                perceptual_hash=perceptual_hash,
                duplicate_detected=True,
                similarity_percentage=near[0].similarity_percentage,
                upload_count=upload_count,
                matches=near,
            )

        return DuplicateReport(perceptual_hash=perceptual_hash, upload_count=upload_count)
