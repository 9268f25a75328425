"""Checksum utilities for identifier-mapping integrity verification."""

import hashlib
from typing import Optional

import structlog

from utils.logging import get_logger


class ChecksumCalculator:
    """Calculates and verifies SHA-256 checksums of identifier mappings."""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize checksum calculator.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("checksum")

    def calculate_sha256(self, data: bytes) -> str:
        """Calculate SHA-256 checksum of data.

        Args:
            data: Data to checksum

        Returns:
            Hexadecimal SHA-256 checksum (64 characters)
        """
        return hashlib.sha256(data).hexdigest()

    def mapping_checksum(self, legacy_id: str, generated_id: str, entity_type: str) -> str:
        """Checksum of one mapping row.

        Fields are joined with ``|`` so ``("1", "23")`` and ``("12", "3")``
        cannot collide.

        Args:
            legacy_id: Legacy identifier (text form)
            generated_id: Generated identifier
            entity_type: Entity type

        Returns:
            Hexadecimal SHA-256 checksum
        """
        payload = "|".join((str(legacy_id), str(generated_id), entity_type))
        return self.calculate_sha256(payload.encode("utf-8"))

    def verify_mapping(
        self,
        legacy_id: str,
        generated_id: str,
        entity_type: str,
        expected_checksum: Optional[str],
    ) -> bool:
        """Verify a stored mapping checksum.

        Args:
            legacy_id: Legacy identifier
            generated_id: Generated identifier
            entity_type: Entity type
            expected_checksum: Checksum stored with the mapping

        Returns:
            True if checksum matches, False otherwise
        """
        if not expected_checksum:
            return False

        actual_checksum = self.mapping_checksum(legacy_id, generated_id, entity_type)
        if actual_checksum.lower() != expected_checksum.lower():
            self.logger.error(
                "Mapping checksum verification failed",
                entity_type=entity_type,
                legacy_id=legacy_id,
                expected=expected_checksum,
                actual=actual_checksum,
            )
            return False

        return True
