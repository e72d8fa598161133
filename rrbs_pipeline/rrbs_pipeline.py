#!/usr/bin/env python3
"""
RRBS (Reduced Representation Bisulfite Sequencing) Pipeline
Sequential driver for single-end and paired-end RRBS samples

This script runs the complete RRBS workflow for one sample:
1. FastQC quality control
2. Trim Galore adapter/RRBS trimming
3. Bismark alignment
4. Bismark deduplication
5. Bismark methylation extraction (+ optional cleanup of intermediates)
6. MultiQC summary report

Features:
- Single-end / paired-end detection from the number of input files
- Explicit filename tracking between steps, with a hard failure when a tool
  does not write the file the next step needs
- Dry-run mode that logs every command without executing it
- Per-sample log file with each command and its captured output

License: MIT
"""

import os
import sys
import argparse
import subprocess
import logging
import json
import re
from pathlib import Path
from datetime import datetime

import pandas as pd

from rrbs_pipeline import __version__, naming
from rrbs_pipeline.stages import (
    STAGES,
    Mode,
    OutputNamingError,
    RunContext,
    StageFailedError,
    initial_state,
    intermediate_files,
)


class RRBSPipeline:
    """Main pipeline class for the RRBS workflow"""

    def __init__(self, config):
        self.config = config
        self.output_dir = Path(config['output_dir']).resolve()

        # Create output directory first, before setting up logging
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.ctx = RunContext(
            sample=config['sample'],
            mode=Mode(config['mode']),
            genome_dir=Path(config['genome_dir']).resolve(),
            inputs=tuple(Path(fq).resolve() for fq in config['fastq_files']),
            output_dir=self.output_dir,
            log_file=self.output_dir / f"{config['sample']}.log",
            dry_run=config.get('dry_run', False),
            keep_intermediates=config.get('keep_intermediates', False),
        )
        self.logger = self._setup_logging()
        self.stage_records = []

    def _setup_logging(self):
        """Setup logging configuration"""
        # Clear any existing handlers
        for handler in logging.root.handlers[:]:
            logging.root.removeHandler(handler)
            handler.close()

        handlers = [
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(self.ctx.log_file, encoding='utf-8'),
        ]

        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(levelname)s - %(message)s',
            handlers=handlers
        )
        return logging.getLogger(__name__)

    def _log_output(self, tool, output):
        self.logger.info(f"--- begin output: {tool} ---")
        if output and output.strip():
            self.logger.info(output.rstrip())
        self.logger.info(f"--- end output: {tool} ---")

    def _run_command(self, stage, cmd):
        """Run a command with proper error handling and logging"""
        self.logger.info(f">> {' '.join(cmd)}")
        if self.ctx.dry_run:
            return None

        tool = cmd[0]
        try:
            result = subprocess.run(
                cmd,
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                encoding="utf-8",
                errors="replace",
                cwd=self.output_dir
            )
        except subprocess.CalledProcessError as e:
            self._log_output(tool, e.stdout)
            self.logger.error(f"!! STEP {stage.number} FAILED: {stage.name} "
                              f"(exit status {e.returncode})")
            raise StageFailedError(stage, cmd, e.returncode) from e
        except FileNotFoundError as e:
            self.logger.error(f"{tool} not found on PATH. Please install {tool}.")
            self.logger.error(f"!! STEP {stage.number} FAILED: {stage.name} (exit status 127)")
            raise StageFailedError(stage, cmd, 127) from e

        self._log_output(tool, result.stdout)
        return result

    def _check_outputs(self, stage, outputs):
        """Make sure every file the stage was predicted to write exists"""
        for name in outputs:
            if (self.output_dir / name).exists():
                continue
            found = sorted(
                p.name for p in self.output_dir.iterdir()
                if p.name.startswith(self.ctx.sample) and p != self.ctx.log_file
            )
            self.logger.error(f"Expected output not found after step {stage.number}: {name}")
            if found:
                self.logger.error(f"Files present for {self.ctx.sample}: {', '.join(found)}")
            raise OutputNamingError(stage, name, found)

    def run_stage(self, stage, state):
        """Run one registry stage and advance the pipeline state"""
        self.logger.info(f"====== STEP {stage.number}: {stage.name} ======")
        cmd = stage.build_command(self.ctx, state.current)

        record = {
            'step': stage.number,
            'name': stage.name,
            'command': ' '.join(cmd),
            'status': 'failed',
            'exit_code': None,
            'duration_s': 0.0,
        }
        self.stage_records.append(record)
        start_time = datetime.now()
        try:
            self._run_command(stage, cmd)
        except StageFailedError as e:
            record['exit_code'] = e.returncode
            raise
        finally:
            record['duration_s'] = round((datetime.now() - start_time).total_seconds(), 3)

        record['exit_code'] = 0

        outputs = stage.outputs(self.ctx)
        if not self.ctx.dry_run:
            self._check_outputs(stage, outputs)
        record['status'] = 'dry-run' if self.ctx.dry_run else 'ok'

        state.produced[stage.number] = outputs
        if stage.feeds_forward:
            state.current = outputs

    def cleanup_intermediates(self, state):
        """Remove intermediate files and give the deduplicated BAM its short name"""
        dedup_bam = state.produced[4][0]
        if self.ctx.keep_intermediates:
            self.logger.info("Keeping intermediate files (--keep-intermediates)")
            state.final_bam = dedup_bam
            return

        self.logger.info("====== CLEANUP: intermediate files ======")
        prefix = "[dry-run] " if self.ctx.dry_run else ""

        for name in intermediate_files(self.ctx):
            path = self.output_dir / name
            self.logger.info(f"{prefix}Removing {name}")
            if not self.ctx.dry_run and path.exists():
                os.remove(path)

        old_stem = naming.bam_stem(dedup_bam)
        new_stem = naming.bam_stem(naming.canonical_bam(self.ctx.sample))
        if self.ctx.dry_run:
            self.logger.info(f"{prefix}Renaming {old_stem}* -> {new_stem}*")
        else:
            for path in sorted(self.output_dir.iterdir()):
                if old_stem in path.name:
                    renamed = path.name.replace(old_stem, new_stem)
                    path.rename(self.output_dir / renamed)
                    self.logger.info(f"Renamed {path.name} -> {renamed}")

        state.final_bam = naming.canonical_bam(self.ctx.sample)
        state.current = (state.final_bam,)

    def summary_lines(self, state):
        """Fixed-order summary block"""
        return [
            "========== SUMMARY ==========",
            f"Sample name     : {self.ctx.sample}",
            f"Mode            : {self.ctx.mode.value}",
            f"Genome index    : {self.ctx.genome_dir}",
            f"Final BAM       : {state.final_bam}",
            f"Methylation     : {naming.methylation_report(state.final_bam)} (or .gz/bedGraph)",
            f"QC Report       : {naming.MULTIQC_REPORT}",
            f"Log saved to    : {self.ctx.log_file}",
        ]

    def emit_summary(self, state):
        for line in self.summary_lines(state):
            self.logger.info(line)

    def _save_run_records(self):
        """Write the per-step table and the run configuration"""
        try:
            self._write_run_records()
        except (OSError, IOError, PermissionError) as e:
            self.logger.warning(f"Could not save run records in {self.output_dir}: {e}")

    def _write_run_records(self):
        stages_file = self.output_dir / f"{self.ctx.sample}.stages.tsv"
        df = pd.DataFrame(self.stage_records,
                          columns=['step', 'name', 'command', 'status', 'exit_code', 'duration_s'])
        df.to_csv(stages_file, sep='\t', index=False)
        self.logger.info(f"Step records saved: {stages_file}")

        config_file = self.output_dir / "pipeline_config.json"
        with open(config_file, 'w') as f:
            json.dump(self.config, f, indent=2)
        self.logger.info(f"Configuration saved: {config_file}")

    def run_complete_pipeline(self):
        """Run the complete RRBS pipeline"""
        start_time = datetime.now()

        self.logger.info(f"RRBS pipeline started at {start_time.strftime('%Y-%m-%d %H:%M:%S')}")
        self.logger.info(f"Sample: {self.ctx.sample} | Mode: {self.ctx.mode.value} | "
                         f"Dry-run: {str(self.ctx.dry_run).lower()}")
        self.logger.info("=" * 42)

        state = initial_state(self.ctx)
        try:
            for stage in STAGES:
                self.run_stage(stage, state)
                if stage.number == 5:
                    self.cleanup_intermediates(state)

            end_time = datetime.now()
            self.logger.info(f"Pipeline completed at {end_time.strftime('%Y-%m-%d %H:%M:%S')}")
            self.logger.info(f"Total duration: {end_time - start_time}")
            self.emit_summary(state)

        except Exception as e:
            self.logger.error(f"Pipeline failed: {str(e)}")
            raise
        finally:
            if not self.ctx.dry_run:
                self._save_run_records()

        return state


def usage_lines(prog):
    return [
        f"  Paired-end: {prog} sample_R1.fastq.gz sample_R2.fastq.gz /path/to/genome [--dry-run]",
        f"  Single-end: {prog} sample.fastq.gz /path/to/genome [--dry-run]",
    ]


def resolve_inputs(positionals):
    """Split positional arguments into (mode, fastq files, genome dir)"""
    if len(positionals) == 3:
        return Mode.PAIRED, list(positionals[:2]), positionals[2]
    if len(positionals) == 2:
        return Mode.SINGLE, [positionals[0]], positionals[1]
    raise ValueError(f"Expected 2 or 3 positional arguments, got {len(positionals)}")


def create_config_from_args(args):
    """Create configuration dictionary from command line arguments"""
    mode, fastq_files, genome_dir = resolve_inputs(args.inputs)
    sample = naming.derive_sample_name(fastq_files[0], args.suffix or ())

    config = {
        'sample': sample,
        'mode': mode.value,
        'fastq_files': fastq_files,
        'genome_dir': genome_dir,
        'output_dir': args.output_dir or f"{sample}_rrbs_output",
        'dry_run': args.dry_run,
        'keep_intermediates': args.keep_intermediates,
        'suffixes': list(args.suffix or []),
    }
    return config


def validate_input_files(config):
    """Validate that all required input files exist"""
    for fastq in config['fastq_files']:
        if not Path(fastq).exists():
            raise FileNotFoundError(f"Input FASTQ not found: {fastq}")

    if not Path(config['genome_dir']).is_dir():
        raise FileNotFoundError(f"Genome index directory not found: {config['genome_dir']}")


def suffix_pattern(value):
    """argparse type for --suffix: the pattern must be a valid regular expression"""
    try:
        re.compile(value)
    except re.error as e:
        raise argparse.ArgumentTypeError(f"invalid suffix pattern {value!r}: {e}")
    return value


def build_parser():
    parser = argparse.ArgumentParser(
        prog="rrbs-pipeline",
        description="RRBS Pipeline - FastQC, Trim Galore, Bismark and MultiQC for one sample",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Paired-end sample
  rrbs-pipeline SRR1.R1.fastq.gz SRR1.R2.fastq.gz /data/genomes/hg38

  # Single-end sample
  rrbs-pipeline SRR2.fastq.gz /data/genomes/hg38

  # Show the commands without running anything
  rrbs-pipeline SRR1.R1.fastq.gz SRR1.R2.fastq.gz /data/genomes/hg38 --dry-run

Output Structure:
  <sample>_rrbs_output/
    ├── <sample>.log
    ├── <sample>.deduplicated.bam
    ├── <sample>.deduplicated.bedGraph.gz
    ├── <sample>.stages.tsv
    ├── multiqc_report.html
    └── pipeline_config.json
        """
    )

    parser.add_argument(
        "inputs",
        nargs="*",
        metavar="INPUT",
        help="FASTQ [FASTQ2] GENOME_INDEX_DIR: one FASTQ (single-end) or two FASTQs "
             "(paired-end), then the Bismark genome directory"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the commands of every step without executing them"
    )

    parser.add_argument(
        "-o", "--output-dir",
        help="Output directory (default: <sample>_rrbs_output)"
    )

    parser.add_argument(
        "--keep-intermediates",
        action="store_true",
        help="Keep trimmed FASTQs, the raw alignment BAM and the M-bias report"
    )

    parser.add_argument(
        "--suffix",
        action="append",
        type=suffix_pattern,
        metavar="REGEX",
        help="Extra FASTQ suffix pattern stripped to derive the sample name (repeatable)"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"RRBS Pipeline v{__version__}"
    )

    return parser


def main(argv=None):
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_intermixed_args(argv)

    try:
        config = create_config_from_args(args)
    except ValueError:
        print("\n".join(usage_lines(parser.prog)), file=sys.stderr)
        sys.exit(1)

    if not config['dry_run']:
        try:
            validate_input_files(config)
        except FileNotFoundError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    # Run pipeline
    try:
        pipeline = RRBSPipeline(config)
        pipeline.run_complete_pipeline()

    except KeyboardInterrupt:
        print("\nPipeline interrupted by user", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Pipeline failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
