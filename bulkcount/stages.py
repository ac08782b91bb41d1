import logging
import os
import re
import subprocess
import threading
from typing import List, Optional, Tuple

import pandas as pd

from bulkcount.constants import (
    ADAPTER_SUFFIX,
    ALIGNMENT_SUMMARY_SUFFIX,
    COUNT_COLUMN,
    COUNTS_SUFFIX,
    ERROR_TAIL_LINES,
    PAIRED_SUFFIX,
    RAW_COUNTS_SUFFIX,
    SAM_SUFFIX,
    TRIMMER_LOG_SUFFIX,
    UNPAIRED_SUFFIX,
)
from bulkcount.errors import (
    ConfigurationScopeError,
    MissingInputError,
    PipelineError,
    StageExecutionError,
)
from bulkcount.models import (
    AlignmentArtifact,
    GeneCountTable,
    RawCountTable,
    ReadPair,
    Reference,
    ReferenceIndex,
    Sample,
    TrimmedReadPair,
)

# create a logger object writing to the given file
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

TRIMMER_PAIRS_PATTERN = re.compile(
    r"Input Read Pairs:\s*(\d+)\s+Both Surviving:\s*(\d+)"
)
ALIGNMENT_RATE_PATTERN = re.compile(r"([\d.]+)%\s+overall alignment rate")


def run(command: List[str], log_filename: str) -> subprocess.Popen:
    # run a command and return the process, sending its output to a log file
    logger.info(f"Running `{' '.join(command)}`...")
    with open(log_filename, "w") as handle:
        process = subprocess.Popen(command, stdout=handle, stderr=subprocess.STDOUT)
    return process


def tail(filename: str, n_lines: int = ERROR_TAIL_LINES) -> str:
    # retrieve the last lines a tool wrote to its log
    if not os.path.exists(filename):
        return ""
    with open(filename, "r", errors="replace") as f:
        lines = [line.rstrip() for line in f if line.strip()]
    return " | ".join(lines[-n_lines:])


def execute(
    command: List[str],
    stage: str,
    log_filename: str,
    accession: Optional[str] = None,
    timeout: Optional[float] = None,
) -> None:
    # run a command to completion, raising if it fails or times out
    try:
        process = run(command, log_filename=log_filename)
    except OSError as e:
        raise StageExecutionError(
            f"{command[0]} could not be started: {e}",
            returncode=None,
            accession=accession,
            stage=stage,
        )
    try:
        returncode = process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()
        raise StageExecutionError(
            f"{command[0]} timed out after {timeout} seconds",
            returncode=None,
            accession=accession,
            stage=stage,
        )
    if returncode != 0:
        raise StageExecutionError(
            f"{command[0]} failed: {tail(log_filename) or 'no output'}",
            returncode=returncode,
            accession=accession,
            stage=stage,
        )


def require(filenames: List[str], stage: str, accession: Optional[str] = None) -> None:
    # fail before a stage starts if any of its inputs are absent
    missing = [filename for filename in filenames if not os.path.exists(filename)]
    if missing:
        raise MissingInputError(
            f"Missing required input(s): {', '.join(missing)}",
            accession=accession,
            stage=stage,
        )


def stage_log(sample: Sample, stage: str) -> str:
    # per-sample log capturing a stage's tool output
    return sample.path(f"_{stage}.log")


def extract_fastqs(
    sample: Sample, program: str, n_threads: int, timeout: Optional[float] = None
) -> ReadPair:
    # the archive must have been fetched out of band before extraction
    os.makedirs(sample.directory, exist_ok=True)
    if sample.archive is not None:
        require([sample.archive], stage="extract_fastq", accession=sample.accession)
    source = sample.archive or sample.accession
    logger.info(f"Extracting FASTQ files for {sample.accession} from {source}")
    execute(
        [
            program,
            source,
            "--split-files",
            "--threads",
            str(n_threads),
            "--progress",
            "--outdir",
            sample.directory,
        ],
        stage="extract_fastq",
        log_filename=stage_log(sample, "extract_fastq"),
        accession=sample.accession,
        timeout=timeout,
    )
    # confirm that both mates were written
    read_pair = ReadPair.for_sample(sample)
    require(
        [read_pair.r1, read_pair.r2], stage="extract_fastq", accession=sample.accession
    )
    logger.info(f"Extraction completed with outputs written to {sample.directory}")
    return read_pair


def run_fastqc(
    sample: Sample,
    read_pair: ReadPair,
    output_directory: str,
    program: str,
    stage: str,
    timeout: Optional[float] = None,
) -> bool:
    # quality reports are observational and never halt the sample
    os.makedirs(output_directory, exist_ok=True)
    logger.info(f"Running FastQC on {sample.accession} reads N=2 files")
    try:
        execute(
            [program, read_pair.r1, read_pair.r2, "-o", output_directory],
            stage=stage,
            log_filename=stage_log(sample, stage),
            accession=sample.accession,
            timeout=timeout,
        )
    except StageExecutionError as e:
        logger.warning(f"FastQC did not complete, continuing without a report: {e}")
        return False
    logger.info(
        f"FastQC completed successfully with outputs written to {output_directory}"
    )
    return True


def write_adapter_fasta(sample: Sample, name: str, base: str, length: int) -> str:
    # write the sample-specific low-complexity adapter used for clipping
    filename = sample.path(ADAPTER_SUFFIX)
    with open(filename, "w") as f:
        f.write(f">{name}_{sample.accession}\n{base * length}\n")
    return filename


def parse_trimmer_log(filename: str) -> Tuple[Optional[int], Optional[int]]:
    # read the input and surviving pair counts reported by trimmomatic
    if not os.path.exists(filename):
        return None, None
    with open(filename, "r", errors="replace") as f:
        match = TRIMMER_PAIRS_PATTERN.search(f.read())
    if match is None:
        return None, None
    return int(match.group(1)), int(match.group(2))


def trimmed_read_pair(sample: Sample) -> TrimmedReadPair:
    # assemble the trimmed outputs expected for a sample
    log_filename = sample.path(TRIMMER_LOG_SUFFIX)
    input_pairs, surviving_pairs = parse_trimmer_log(log_filename)
    return TrimmedReadPair(
        r1_paired=sample.path("_1" + PAIRED_SUFFIX),
        r1_unpaired=sample.path("_1" + UNPAIRED_SUFFIX),
        r2_paired=sample.path("_2" + PAIRED_SUFFIX),
        r2_unpaired=sample.path("_2" + UNPAIRED_SUFFIX),
        log=log_filename,
        input_pairs=input_pairs,
        surviving_pairs=surviving_pairs,
    )


def trim_fastqs(
    sample: Sample,
    read_pair: ReadPair,
    program: str,
    adapter_clip_file: str,
    adapter_fasta: str,
    illuminaclip_settings: str,
    headcrop: int,
    sliding_window: str,
    trailing: int,
    minlen: int,
    timeout: Optional[float] = None,
) -> TrimmedReadPair:
    require(
        [read_pair.r1, read_pair.r2, adapter_clip_file, adapter_fasta],
        stage="trim_fastq",
        accession=sample.accession,
    )
    logger.info(
        f"Trimming {sample.accession} with {os.path.basename(adapter_clip_file)} and {os.path.basename(adapter_fasta)}"
    )
    outputs = trimmed_read_pair(sample)
    # reads shorter than MINLEN leave the paired output, surviving mates go to unpaired
    execute(
        [
            program,
            "PE",
            "-phred33",
            read_pair.r1,
            read_pair.r2,
            outputs.r1_paired,
            outputs.r1_unpaired,
            outputs.r2_paired,
            outputs.r2_unpaired,
            f"ILLUMINACLIP:{adapter_clip_file}:{illuminaclip_settings}",
            f"ILLUMINACLIP:{adapter_fasta}:{illuminaclip_settings}",
            f"HEADCROP:{headcrop}",
            f"SLIDINGWINDOW:{sliding_window}",
            f"TRAILING:{trailing}",
            f"MINLEN:{minlen}",
        ],
        stage="trim_fastq",
        log_filename=outputs.log,
        accession=sample.accession,
        timeout=timeout,
    )
    trimmed = trimmed_read_pair(sample)
    require(
        [trimmed.r1_paired, trimmed.r2_paired],
        stage="trim_fastq",
        accession=sample.accession,
    )
    if trimmed.survival_rate is not None:
        logger.info(
            f"Trimming kept {trimmed.surviving_pairs}/{trimmed.input_pairs} pairs ({trimmed.survival_rate:.2f}%) for {sample.accession}"
        )
    return trimmed


class IndexBuilder:
    """Builds the shared alignment index once and hands out read-only handles.

    Every sample calls `get` before aligning. The first caller builds the
    index while holding the lock, so concurrent callers block until it exists.
    An index already present on disk is reused. A failed build is not retried;
    later callers receive the same failure.
    """

    def __init__(
        self, reference: Reference, program: str, timeout: Optional[float] = None
    ) -> None:
        self.reference = reference
        self.program = program
        self.timeout = timeout
        self.n_builds = 0
        self._index: Optional[ReferenceIndex] = None
        self._error: Optional[PipelineError] = None
        self._lock = threading.Lock()

    def get(self, accession: Optional[str] = None) -> ReferenceIndex:
        with self._lock:
            if self._error is not None:
                raise StageExecutionError(
                    f"Index build failed earlier: {self._error.message}",
                    returncode=getattr(self._error, "returncode", None),
                    accession=accession,
                    stage="build_index",
                )
            if self._index is None:
                try:
                    self._index = self._build(accession)
                except PipelineError as e:
                    self._error = e
                    raise
            return self._index

    def _build(self, accession: Optional[str]) -> ReferenceIndex:
        index = ReferenceIndex(prefix=self.reference.index_prefix)
        if index.complete:
            logger.info(f"Reusing existing HISAT2 index at {index.prefix}")
            return index
        if any(os.path.exists(filename) for filename in index.files):
            logger.warning(f"Rebuilding incomplete HISAT2 index at {index.prefix}")
        require([self.reference.sequence], stage="build_index", accession=accession)
        os.makedirs(self.reference.index_directory, exist_ok=True)
        logger.info(f"Building HISAT2 index {index.prefix} from {self.reference.sequence}")
        execute(
            [self.program, self.reference.sequence, index.prefix],
            stage="build_index",
            log_filename=f"{index.prefix}.build.log",
            accession=accession,
            timeout=self.timeout,
        )
        self.n_builds += 1
        logger.info(f"HISAT2 index built at {index.prefix}")
        return index


def parse_alignment_summary(filename: str) -> Optional[float]:
    # retrieve the overall alignment rate from a HISAT2 summary
    if not os.path.exists(filename):
        return None
    with open(filename, "r", errors="replace") as f:
        match = ALIGNMENT_RATE_PATTERN.search(f.read())
    return float(match.group(1)) if match else None


def alignment_artifact(sample: Sample) -> AlignmentArtifact:
    summary = sample.path(ALIGNMENT_SUMMARY_SUFFIX)
    return AlignmentArtifact(
        sam=sample.path(SAM_SUFFIX),
        summary=summary,
        alignment_rate=parse_alignment_summary(summary),
    )


def align_fastqs(
    sample: Sample,
    read_pair: ReadPair,
    index: ReferenceIndex,
    program: str,
    n_cores: int,
    timeout: Optional[float] = None,
) -> AlignmentArtifact:
    require(
        [read_pair.r1, read_pair.r2, *index.files],
        stage="align_fastq",
        accession=sample.accession,
    )
    logger.info(f"Aligning {sample.accession} against {index.prefix} with HISAT2")
    outputs = alignment_artifact(sample)
    execute(
        [
            program,
            "-q",
            "--phred33",
            "-p",
            str(n_cores),
            "--dta",
            "-x",
            index.prefix,
            "-1",
            read_pair.r1,
            "-2",
            read_pair.r2,
            "-S",
            outputs.sam,
            "--summary-file",
            outputs.summary,
        ],
        stage="align_fastq",
        log_filename=stage_log(sample, "align_fastq"),
        accession=sample.accession,
        timeout=timeout,
    )
    alignment = alignment_artifact(sample)
    require(
        [alignment.sam, alignment.summary],
        stage="align_fastq",
        accession=sample.accession,
    )
    if alignment.alignment_rate is not None:
        logger.info(
            f"HISAT2 aligned {alignment.alignment_rate:.2f}% of reads for {sample.accession}"
        )
    return alignment


def restricted_annotation_filename(reference: Reference) -> str:
    if reference.chromosome is None:
        return reference.annotation
    stem, extension = os.path.splitext(reference.annotation)
    return f"{stem}.chr{reference.chromosome}{extension or '.gtf'}"


def reference_sequence_names(filename: str) -> List[str]:
    # collect the sequence names from the FASTA header lines
    with open(filename, "r") as f:
        return [line[1:].split()[0] for line in f if line.startswith(">") and line[1:].strip()]


def restrict_annotation(reference: Reference) -> str:
    """Limit the annotation to the sequences covered by the reference.

    Header lines (starting with `#`) are kept first, followed by the feature
    rows whose sequence name equals the configured chromosome. The full
    annotation is used when no chromosome is configured. Either way the kept
    rows must sit on sequences named in the reference FASTA, otherwise
    ConfigurationScopeError is raised before any read is aligned.
    """
    require([reference.annotation, reference.sequence], stage="restrict_annotation")
    sequences = set(reference_sequence_names(reference.sequence))
    if reference.chromosome is not None and reference.chromosome not in sequences:
        raise ConfigurationScopeError(
            f"Chromosome {reference.chromosome} is not a sequence in {reference.sequence}",
            stage="restrict_annotation",
        )
    headers, body = [], []
    with open(reference.annotation, "r") as f:
        for line in f:
            if line.startswith("#"):
                headers.append(line)
                continue
            if not line.strip():
                continue
            name = line.split("\t", 1)[0]
            if reference.chromosome is not None and name != reference.chromosome:
                continue
            if name in sequences:
                body.append(line)
    n_rows = len(body)
    if n_rows == 0:
        raise ConfigurationScopeError(
            f"Annotation {reference.annotation} has no feature rows on the sequences of {reference.sequence} for scope {reference.chromosome or 'all'}",
            stage="restrict_annotation",
        )
    if reference.chromosome is None:
        filename = reference.annotation
    else:
        filename = restricted_annotation_filename(reference)
        logger.info(
            f"Restricting {reference.annotation} to chromosome {reference.chromosome}"
        )
        with open(filename, "w") as f:
            f.writelines(headers + body)
    logger.info(f"Annotation {filename} holds {n_rows} feature rows in scope")
    return filename


def count_features(
    sample: Sample,
    alignment: AlignmentArtifact,
    annotation: str,
    program: str,
    n_cores: int,
    feature_type: str,
    attribute_type: str,
    extra_options: Optional[List[str]] = None,
    timeout: Optional[float] = None,
) -> RawCountTable:
    require([alignment.sam, annotation], stage="count_features", accession=sample.accession)
    logger.info(f"Counting {feature_type} reads per {attribute_type} for {sample.accession}")
    raw = RawCountTable(path=sample.path(RAW_COUNTS_SUFFIX))
    execute(
        [
            program,
            "-T",
            str(n_cores),
            "-p",
            "-t",
            feature_type,
            "-g",
            attribute_type,
            *[str(option) for option in (extra_options or [])],
            "-a",
            annotation,
            "-o",
            raw.path,
            alignment.sam,
        ],
        stage="count_features",
        log_filename=stage_log(sample, "count_features"),
        accession=sample.accession,
        timeout=timeout,
    )
    require([raw.path], stage="count_features", accession=sample.accession)
    return raw


def reformat_counts(sample: Sample, raw: RawCountTable) -> GeneCountTable:
    # drop the program line and header, keeping gene id and count columns
    require([raw.path], stage="reformat_counts", accession=sample.accession)
    try:
        df = pd.read_table(
            raw.path, skiprows=1, header=0, dtype=str, keep_default_na=False
        )
    except pd.errors.EmptyDataError:
        raise ConfigurationScopeError(
            f"Count table {raw.path} is empty",
            accession=sample.accession,
            stage="reformat_counts",
        )
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise PipelineError(
            f"Count table {raw.path} could not be parsed: {e}",
            accession=sample.accession,
            stage="reformat_counts",
        )
    if df.shape[1] <= COUNT_COLUMN:
        raise PipelineError(
            f"Count table {raw.path} has {df.shape[1]} columns, expected at least {COUNT_COLUMN + 1}",
            accession=sample.accession,
            stage="reformat_counts",
        )
    counts = df.iloc[:, [0, COUNT_COLUMN]]
    if counts.empty:
        raise ConfigurationScopeError(
            f"Count table {raw.path} has no gene rows, check the annotation scope",
            accession=sample.accession,
            stage="reformat_counts",
        )
    duplicated = counts.iloc[:, 0][counts.iloc[:, 0].duplicated()].unique()
    if len(duplicated):
        raise ConfigurationScopeError(
            f"Count table {raw.path} repeats gene ids: {', '.join(duplicated[:5])}",
            accession=sample.accession,
            stage="reformat_counts",
        )
    filename = sample.path(COUNTS_SUFFIX)
    counts.to_csv(filename, sep="\t", header=False, index=False)
    logger.info(f"Gene count table with {len(counts)} genes written to {filename}")
    return GeneCountTable(path=filename, n_genes=len(counts))
