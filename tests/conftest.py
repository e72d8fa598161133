import logging
import os
import shlex
import stat

import pytest


PAIRED_OUTPUTS = {
    "fastqc": ["SRR1.R1_fastqc.html", "SRR1.R2_fastqc.html"],
    "trim_galore": ["SRR1.R1_val_1.fq.gz", "SRR1.R2_val_2.fq.gz"],
    "bismark": ["SRR1.R1_val_1_bismark_bt2_pe.bam"],
    "deduplicate_bismark": ["SRR1.R1_val_1_bismark_bt2_pe.deduplicated.bam"],
    "bismark_methylation_extractor": [
        "SRR1.R1_val_1_bismark_bt2_pe.deduplicated.bedGraph.gz",
        "SRR1.R1_val_1_bismark_bt2_pe.deduplicated.bismark.cov.gz",
        "SRR1.R1_val_1_bismark_bt2_pe.deduplicated_splitting_report.txt",
        "SRR1.R1_val_1_bismark_bt2_pe.deduplicated.M-bias.txt",
    ],
    "multiqc": ["multiqc_report.html"],
}

SINGLE_OUTPUTS = {
    "fastqc": ["SRR2_fastqc.html"],
    "trim_galore": ["SRR2_trimmed.fq.gz"],
    "bismark": ["SRR2_trimmed_bismark_bt2.bam"],
    "deduplicate_bismark": ["SRR2_trimmed_bismark_bt2.deduplicated.bam"],
    "bismark_methylation_extractor": [
        "SRR2_trimmed_bismark_bt2.deduplicated.bedGraph.gz",
        "SRR2_trimmed_bismark_bt2.deduplicated_splitting_report.txt",
        "SRR2_trimmed_bismark_bt2.deduplicated.M-bias.txt",
    ],
    "multiqc": ["multiqc_report.html"],
}


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
        handler.close()


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Temporary working directory holding inputs and a genome directory"""
    monkeypatch.chdir(tmp_path)
    for name in ("SRR1.R1.fastq.gz", "SRR1.R2.fastq.gz", "SRR2.fastq.gz"):
        (tmp_path / name).write_bytes(b"")
    (tmp_path / "genome").mkdir()
    return tmp_path


@pytest.fixture
def fake_tools(tmp_path, monkeypatch):
    """
    Install fake tool executables and put them alone on PATH.

    Each fake records its arguments in calls.txt, creates the files it is
    given (shell builtins only) and exits with the requested status.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    calls = tmp_path / "calls.txt"
    monkeypatch.setenv("PATH", str(bin_dir))

    def install(outputs, exit_codes=None, extra_lines=None):
        exit_codes = exit_codes or {}
        extra_lines = extra_lines or {}
        for tool, files in outputs.items():
            lines = [
                "#!/bin/sh",
                f'echo "{tool} $*" >> {shlex.quote(str(calls))}',
            ]
            lines += [f": > {shlex.quote(name)}" for name in files]
            lines += extra_lines.get(tool, [])
            lines.append(f'echo "{tool} finished"')
            lines.append(f"exit {exit_codes.get(tool, 0)}")
            script = bin_dir / tool
            script.write_text("\n".join(lines) + "\n")
            script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return calls

    return install


def read_commands(log_file):
    """The rendered '>>' command lines of a log, without timestamps"""
    with open(log_file) as f:
        return [line.split(" - ", 2)[2].rstrip("\n") for line in f if " - INFO - >> " in line]


def step_headers(log_file):
    with open(log_file) as f:
        return [int(line.split("STEP ")[1].split(":")[0])
                for line in f if "====== STEP " in line]


def list_dir(path):
    return sorted(os.listdir(path))
