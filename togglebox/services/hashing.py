"""
Deterministic Bucketing.

Maps a user identity plus a flag or experiment key to a stable bucket in
[0, 10000). Buckets are fixed-point percentages: bucket 4999 is 49.99%.

Key Algorithm:
    seed   = user_id + ":" + key
    h      = DJB2-xor(seed UTF-8 bytes), then the murmur3 32-bit finalizer
    bucket = h % 10000

This ensures:
    - Same user always gets the same bucket for a key, across processes
      and releases (Python's built-in hash() is salted per process and is
      never used here)
    - Independent assignments per key, since the key is part of the seed
    - Monotonic rollout: bucket < percentage * 100 only gains users as the
      percentage grows
"""

BUCKET_COUNT = 10_000

_MASK_32 = 0xFFFFFFFF


class BucketingHasher:
    """
    Stable, non-cryptographic bucketing hash.

    Usage:
        hasher = BucketingHasher()
        bucket = hasher.bucket_for("user-123", "dark-mode")
        in_rollout = bucket < 25 * 100  # 25% rollout
    """

    @staticmethod
    def hash32(data: str) -> int:
        """
        Hash a string to an unsigned 32-bit integer.

        DJB2 (xor variant) spreads the input over 32 bits; the murmur3
        finalizer then avalanches it so near-identical seeds ("user-1",
        "user-2") land far apart.
        """
        h = 5381
        for byte in data.encode("utf-8"):
            h = (((h << 5) + h) ^ byte) & _MASK_32

        h ^= h >> 16
        h = (h * 0x85EBCA6B) & _MASK_32
        h ^= h >> 13
        h = (h * 0xC2B2AE35) & _MASK_32
        h ^= h >> 16
        return h

    @staticmethod
    def make_seed(user_id: str, key: str) -> str:
        return f"{user_id}:{key}"

    def bucket(self, seed: str) -> int:
        """
        Compute the bucket for a seed.

        Args:
            seed: Usually built with make_seed().

        Returns:
            Integer from 0 to 9999.

        Example:
            bucket = BucketingHasher().bucket("user-123:dark-mode")
            # In a 50% rollout, users with bucket < 5000 are included
        """
        return self.hash32(seed) % BUCKET_COUNT

    def bucket_for(self, user_id: str, key: str) -> int:
        """Bucket for a user on a given flag or experiment key."""
        return self.bucket(self.make_seed(user_id, key))


def percentage_threshold(percentage: float) -> int:
    """Convert a 0-100 percentage to the bucket threshold (exclusive)."""
    return round(percentage * (BUCKET_COUNT // 100))
