"""stackformer: composable transformer blocks with incremental decoding."""

__version__ = "0.1.0"
