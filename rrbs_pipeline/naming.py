"""
Filename conventions for the RRBS pipeline

Sample names are derived from the primary FASTQ filename, and every stage's
output name is predicted from the name of its input using the convention of
the external tool that writes it (Trim Galore, Bismark, deduplicate_bismark,
bismark_methylation_extractor, FastQC). None of these tools reports the name
it chose, so the driver has to reproduce it exactly.
"""

import re
from pathlib import Path


# Ordered suffix grammar used to strip a FASTQ filename down to the sample
# name. The first pattern that matches wins.
FASTQ_SUFFIXES = (
    r'[._]R1\.f(ast)?q(\.gz)?$',
    r'R1\.f(ast)?q(\.gz)?$',
    r'\.f(ast)?q(\.gz)?$',
)

# Extensions Trim Galore, Bismark and FastQC strip before appending their own
# suffixes. Longest first.
READ_EXTENSIONS = ('.fastq.gz', '.fq.gz', '.fastq', '.fq')

MULTIQC_REPORT = "multiqc_report.html"


def derive_sample_name(fastq, extra_suffixes=()):
    """
    Derive the sample name from a FASTQ path.

    Args:
        fastq: Path (or name) of the primary FASTQ file
        extra_suffixes: Additional regular expressions tried before the
            built-in FASTQ_SUFFIXES

    Returns:
        str: The basename with the first matching suffix removed, or with
        only its final extension removed if nothing matches
    """
    name = Path(fastq).name
    for pattern in tuple(extra_suffixes) + FASTQ_SUFFIXES:
        stripped = re.sub(pattern, '', name)
        if stripped != name and stripped:
            return stripped
    return Path(name).stem


def read_stem(path):
    """Basename of a read file without its FASTQ extension"""
    name = Path(path).name
    for ext in READ_EXTENSIONS:
        if name.endswith(ext):
            return name[:-len(ext)]
    return name


def _fq_suffix(path):
    # Trim Galore only gzips its output when the input was gzipped
    return '.fq.gz' if str(path).endswith('.gz') else '.fq'


def trimmed_single(fastq):
    return f"{read_stem(fastq)}_trimmed{_fq_suffix(fastq)}"


def trimmed_pair(r1, r2):
    return (f"{read_stem(r1)}_val_1{_fq_suffix(r1)}",
            f"{read_stem(r2)}_val_2{_fq_suffix(r2)}")


def bismark_bam(trimmed, paired):
    """Bismark names its BAM after the (first) input read file"""
    suffix = '_bismark_bt2_pe.bam' if paired else '_bismark_bt2.bam'
    return read_stem(trimmed) + suffix


def deduplicated_bam(bam):
    return re.sub(r'\.bam$', '', bam) + '.deduplicated.bam'


def bam_stem(bam):
    return re.sub(r'\.bam$', '', Path(bam).name)


def fastqc_report(fastq):
    return f"{read_stem(fastq)}_fastqc.html"


def canonical_bam(sample):
    return f"{sample}.deduplicated.bam"


def methylation_report(bam):
    return f"{bam_stem(bam)}_Methylation_report.txt"
