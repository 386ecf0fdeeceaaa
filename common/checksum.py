"""Fletcher-16 checksum over frame content."""


def fletcher16(data: bytes) -> int:
    """Return the Fletcher-16 checksum of data as (b << 8) | a."""
    a = 0
    b = 0
    for byte in data:
        a = (a + byte) % 255
        b = (b + a) % 255
    return (b << 8) | a
