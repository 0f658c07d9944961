def should_sample(trace_id_numeric: int, sample_rate: int) -> bool:
    """Return whether the trace with the given numeric id is kept at 1/sample_rate.

    The decision only depends on the trace id so every span of a trace gets
    the same outcome, whichever request or format it arrived in.

    >>> [t for t in range(30) if should_sample(t, 10)]
    [0, 10, 20]
    >>> should_sample(7, 1)
    True
    """
    if sample_rate <= 1:
        return True
    return trace_id_numeric % sample_rate == 0
