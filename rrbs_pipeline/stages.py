"""
Stage registry for the RRBS pipeline

Each stage pairs the command sent to an external tool with the filenames
that tool is expected to leave in the output directory. Stages whose
outputs feed forward replace the pipeline's current filenames, so the next
stage is built from exactly what the previous one predicted.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from rrbs_pipeline import naming


class Mode(Enum):
    SINGLE = "single"
    PAIRED = "paired"


class PipelineError(RuntimeError):
    """Base class for failures during a pipeline run"""


class StageFailedError(PipelineError):
    """An external tool exited with a non-zero status"""

    def __init__(self, stage, command, returncode):
        self.stage = stage
        self.command = command
        self.returncode = returncode
        super().__init__(
            f"Step {stage.number} ({stage.name}) failed with exit status {returncode}: "
            f"{' '.join(command)}"
        )


class OutputNamingError(PipelineError):
    """A stage finished but did not produce the filename the pipeline predicted"""

    def __init__(self, stage, expected, found=()):
        self.stage = stage
        self.expected = expected
        self.found = list(found)
        message = (f"Step {stage.number} ({stage.name}) did not produce expected file "
                   f"{expected}; the tool's naming convention may have changed")
        if self.found:
            message += f" (found: {', '.join(self.found)})"
        super().__init__(message)


@dataclass(frozen=True)
class RunContext:
    sample: str
    mode: Mode
    genome_dir: Path
    inputs: Tuple[Path, ...]
    output_dir: Path
    log_file: Path
    dry_run: bool = False
    keep_intermediates: bool = False

    @property
    def paired(self) -> bool:
        return self.mode is Mode.PAIRED


@dataclass
class PipelineState:
    current: Tuple[str, ...]
    produced: Dict[int, Tuple[str, ...]] = field(default_factory=dict)
    final_bam: Optional[str] = None


@dataclass(frozen=True)
class StageDescriptor:
    number: int
    name: str
    build_command: Callable[[RunContext, Tuple[str, ...]], List[str]]
    outputs: Callable[[RunContext], Tuple[str, ...]]
    feeds_forward: bool = True


# ---------------------------------------------------------------------------
# Output name derivation
# ---------------------------------------------------------------------------

def _trimmed_reads(ctx):
    if ctx.paired:
        return naming.trimmed_pair(*ctx.inputs)
    return (naming.trimmed_single(ctx.inputs[0]),)


def _aligned_bam(ctx):
    return (naming.bismark_bam(_trimmed_reads(ctx)[0], ctx.paired),)


def _deduplicated_bam(ctx):
    return (naming.deduplicated_bam(_aligned_bam(ctx)[0]),)


def _fastqc_outputs(ctx):
    return tuple(naming.fastqc_report(fq) for fq in ctx.inputs)


def _methylation_outputs(ctx):
    stem = naming.bam_stem(_deduplicated_bam(ctx)[0])
    return (f"{stem}.bedGraph.gz", f"{stem}_splitting_report.txt")


def _multiqc_outputs(ctx):
    return (naming.MULTIQC_REPORT,)


# ---------------------------------------------------------------------------
# Command builders
# ---------------------------------------------------------------------------

def _fastqc_command(ctx, current):
    return ["fastqc", *current, "-o", "."]


def _trim_galore_command(ctx, current):
    cmd = ["trim_galore", "--rrbs"]
    if ctx.paired:
        cmd.append("--paired")
    return cmd + [*current, "-o", "."]


def _bismark_command(ctx, current):
    cmd = ["bismark", "--genome", str(ctx.genome_dir)]
    if ctx.paired:
        cmd += ["-1", current[0], "-2", current[1]]
    else:
        cmd.append(current[0])
    return cmd + ["-o", "."]


def _deduplicate_command(ctx, current):
    cmd = ["deduplicate_bismark"]
    if ctx.paired:
        cmd.append("--paired")
    return cmd + [current[0]]


def _methylation_command(ctx, current):
    cmd = ["bismark_methylation_extractor"]
    if ctx.paired:
        cmd += ["--paired-end", "--no_overlap"]
    return cmd + ["--bedGraph", "--gzip", "--output", ".", current[0]]


def _multiqc_command(ctx, current):
    return ["multiqc", ".", "--outdir", "."]


STAGES = (
    StageDescriptor(1, "FastQC", _fastqc_command, _fastqc_outputs, feeds_forward=False),
    StageDescriptor(2, "Trim Galore", _trim_galore_command, _trimmed_reads),
    StageDescriptor(3, "Bismark Alignment", _bismark_command, _aligned_bam),
    StageDescriptor(4, "Deduplicate BAM", _deduplicate_command, _deduplicated_bam),
    StageDescriptor(5, "Methylation Extraction", _methylation_command, _methylation_outputs,
                    feeds_forward=False),
    StageDescriptor(6, "MultiQC", _multiqc_command, _multiqc_outputs, feeds_forward=False),
)


def initial_state(ctx):
    """Pipeline state before step 1: the user's FASTQ files"""
    return PipelineState(current=tuple(str(path) for path in ctx.inputs))


def intermediate_files(ctx):
    """Files removed by the cleanup step after methylation extraction"""
    dedup_stem = naming.bam_stem(_deduplicated_bam(ctx)[0])
    return _trimmed_reads(ctx) + _aligned_bam(ctx) + (f"{dedup_stem}.M-bias.txt",)
