"""
Worker side of out-of-process execution.
"""
