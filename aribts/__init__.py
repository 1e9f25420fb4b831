"""Processing of ARIB MPEG-2 transport streams: clocks, packet I/O, PSI/SI parsing and stream filters."""

__version__ = "0.1.0"