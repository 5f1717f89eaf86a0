"""Metric sampling, scheduling, retention and the pipeline that ties them together."""
