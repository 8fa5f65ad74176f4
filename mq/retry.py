def retry_delay_ms(attempts: int, base_delay_ms: int = 1000, max_delay_ms: int = 300000) -> int:
    """
    Delay before the next try of a job that has failed ``attempts`` times.

        delay = min(base * 2 ^ (attempts - 1), max_delay)

    attempts=1 gives the base delay. No jitter: retry times are
    deterministic so a job's ``retry_at`` can be asserted on.
    """
    # 2^20 * base is far past any sane cap already
    exponent = min(max(attempts - 1, 0), 20)
    return min(base_delay_ms * (2 ** exponent), max_delay_ms)
