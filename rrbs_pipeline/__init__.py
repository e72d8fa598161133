"""RRBS Pipeline: FastQC, Trim Galore, Bismark and MultiQC driver for one sample"""

__version__ = "1.0.0"
