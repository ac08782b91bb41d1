import argparse
import logging
import os
import shutil
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Dict, List, Optional

import pandas as pd

from bulkcount.config import (
    configure_config,
    identify_start_step,
    load_configs,
    setup_logger,
    validate_samples,
)
from bulkcount.constants import (
    COUNT_MATRIX_FILE,
    COUNTS_SUFFIX,
    DEFAULTS,
    MIN_REPLICATES,
    PIPELINE_STEPS,
    PROGRAMS,
    RAW_COUNTS_SUFFIX,
    STATUS_FILE,
    SUMMARY_FILE,
)
from bulkcount.errors import CleanupPreconditionError, PipelineError
from bulkcount.models import (
    ReadPair,
    RawCountTable,
    Reference,
    ReferenceIndex,
    ResultSet,
    Sample,
    SampleFailure,
    SampleOutcome,
    SampleResult,
    expected_result_paths,
)
from bulkcount.stages import (
    IndexBuilder,
    align_fastqs,
    alignment_artifact,
    count_features,
    extract_fastqs,
    reformat_counts,
    require,
    restrict_annotation,
    run_fastqc,
    trim_fastqs,
    trimmed_read_pair,
    write_adapter_fasta,
)

# create a logger object writing to the given file
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

_status_lock = threading.Lock()


def write_status(filename: Optional[str], message: str) -> None:
    # append a message to the status file read by the web interface
    if filename is None:
        return
    with _status_lock:
        with open(filename, "a") as f:
            f.write(f"{message}\n")


def executor(
    pipeline_step: str,
    sample: Sample,
    state: Dict,
    configs: Dict,
    annotation: str,
    index_builder: IndexBuilder,
) -> None:
    # execute the pipeline step for a sample, storing its artifact in the state
    programs = configs["programs"]
    timeout = configs["stage_timeout"]
    if pipeline_step == "extract_fastq":
        state["reads"] = extract_fastqs(
            sample=sample,
            program=programs["fasterq-dump"],
            n_threads=configs["extract_threads"],
            timeout=timeout,
        )
    elif pipeline_step == "qc_raw_fastq":
        run_fastqc(
            sample=sample,
            read_pair=state["reads"],
            output_directory=os.path.join(
                sample.directory, configs["raw_fastqc_directory"]
            ),
            program=programs["fastqc"],
            stage=pipeline_step,
            timeout=timeout,
        )
    elif pipeline_step == "trim_fastq":
        adapter_fasta = write_adapter_fasta(
            sample=sample,
            name=configs["synthetic_adapter_name"],
            base=configs["synthetic_adapter_base"],
            length=configs["synthetic_adapter_length"],
        )
        state["trimmed"] = trim_fastqs(
            sample=sample,
            read_pair=state["reads"],
            program=programs["trimmomatic"],
            adapter_clip_file=configs["adapter_clip_file"],
            adapter_fasta=adapter_fasta,
            illuminaclip_settings=configs["illuminaclip_settings"],
            headcrop=configs["headcrop"],
            sliding_window=configs["sliding_window"],
            trailing=configs["trailing"],
            minlen=configs["minlen"],
            timeout=timeout,
        )
    elif pipeline_step == "qc_trimmed_fastq":
        run_fastqc(
            sample=sample,
            read_pair=state["trimmed"].paired,
            output_directory=os.path.join(
                sample.directory, configs["trimmed_fastqc_directory"]
            ),
            program=programs["fastqc"],
            stage=pipeline_step,
            timeout=timeout,
        )
    elif pipeline_step == "build_index":
        state["index"] = index_builder.get(accession=sample.accession)
    elif pipeline_step == "align_fastq":
        state["alignment"] = align_fastqs(
            sample=sample,
            read_pair=state["trimmed"].paired,
            index=state["index"],
            program=programs["hisat2"],
            n_cores=configs["n_cores"],
            timeout=timeout,
        )
    elif pipeline_step == "count_features":
        state["raw_counts"] = count_features(
            sample=sample,
            alignment=state["alignment"],
            annotation=annotation,
            program=programs["featureCounts"],
            n_cores=configs["n_cores"],
            feature_type=configs["feature_type"],
            attribute_type=configs["attribute_type"],
            extra_options=configs["featurecounts_options"],
            timeout=timeout,
        )
    elif pipeline_step == "reformat_counts":
        state["counts"] = reformat_counts(sample=sample, raw=state["raw_counts"])
    else:
        logger.error(f"Unknown pipeline step: {pipeline_step}")
        raise ValueError(f"Unknown pipeline step: {pipeline_step}")


def recover(pipeline_step: str, sample: Sample, state: Dict, reference: Reference) -> None:
    # point a skipped step at the artifact an earlier run left on disk
    if pipeline_step == "extract_fastq":
        state["reads"] = ReadPair.for_sample(sample)
    elif pipeline_step == "trim_fastq":
        state["trimmed"] = trimmed_read_pair(sample)
    elif pipeline_step == "build_index":
        state["index"] = ReferenceIndex(prefix=reference.index_prefix)
    elif pipeline_step == "align_fastq":
        state["alignment"] = alignment_artifact(sample)
    elif pipeline_step == "count_features":
        state["raw_counts"] = RawCountTable(path=sample.path(RAW_COUNTS_SUFFIX))


def discard_counts(sample: Sample, output_directory: Optional[str] = None) -> None:
    # a failed sample must not leave a count table behind, here or in the results
    filenames = [sample.path(COUNTS_SUFFIX)]
    if output_directory is not None:
        filenames.extend(expected_result_paths(output_directory, sample).values())
    for filename in filenames:
        if os.path.exists(filename):
            logger.warning(f"Removing stale result {filename}")
            os.remove(filename)


def run_sample(
    sample: Sample,
    steps: List[str],
    reference: Reference,
    annotation: str,
    index_builder: IndexBuilder,
    configs: Dict,
    status_file: Optional[str] = None,
    output_directory: Optional[str] = None,
) -> SampleOutcome:
    """Run every stage for one sample, stopping at the first fatal error."""
    logger.info(f"Processing sample {sample.accession} ({sample.condition})")
    os.makedirs(sample.directory, exist_ok=True)
    state: Dict = {}
    pipeline_step = None
    try:
        for pipeline_step in PIPELINE_STEPS:
            if pipeline_step not in steps:
                recover(pipeline_step, sample, state, reference)
                write_status(status_file, f"STATUS: {sample.accession}:{pipeline_step} skipped")
                continue
            logger.info(f"Executing pipeline step {pipeline_step} for {sample.accession}")
            write_status(status_file, f"STATUS: {sample.accession}:{pipeline_step} in_progress")
            executor(
                pipeline_step=pipeline_step,
                sample=sample,
                state=state,
                configs=configs,
                annotation=annotation,
                index_builder=index_builder,
            )
            write_status(status_file, f"STATUS: {sample.accession}:{pipeline_step} finished")
    except PipelineError as e:
        stage = e.stage or pipeline_step
        logger.error(f"Sample {sample.accession} failed at stage {stage}: {e}")
        write_status(status_file, f"STATUS: {sample.accession}:{stage} failed")
        discard_counts(sample, output_directory)
        return SampleFailure(sample=sample, stage=stage, error=e)
    return SampleResult(
        sample=sample,
        trimmed=state["trimmed"],
        alignment=state["alignment"],
        counts=state["counts"],
    )


def collect_results(result: SampleResult, output_directory: str) -> SampleResult:
    # copy the count table and alignment summary under condition-qualified names
    paths = expected_result_paths(output_directory, result.sample)
    require(
        [result.counts.path, result.alignment.summary],
        stage="collect_results",
        accession=result.sample.accession,
    )
    shutil.copyfile(result.counts.path, paths["counts"])
    shutil.copyfile(result.alignment.summary, paths["summary"])
    logger.info(f"Copied results for {result.sample.accession} to {output_directory}")
    return replace(result, result_counts=paths["counts"], result_summary=paths["summary"])


def aggregate_counts(results: List[SampleResult], output_filename: str) -> Optional[str]:
    # merge every gene count table into a single genes by samples matrix
    if not results:
        logger.warning("No gene count tables to aggregate")
        return None
    logger.info(f"Generating count matrix from N={len(results)} files")
    counts = []
    for result in results:
        df = pd.read_table(
            result.counts.path,
            header=None,
            names=["GeneID", result.sample.label],
            index_col="GeneID",
            dtype={"GeneID": str},
            keep_default_na=False,
        )
        counts.append(df)
    matrix = pd.concat(counts, axis=1).fillna(0).astype(int)
    os.makedirs(os.path.dirname(output_filename), exist_ok=True)
    matrix.to_csv(output_filename)
    logger.info(f"Count matrix generated at {output_filename}")
    return output_filename


def cleanup_intermediates(result: SampleResult) -> List[str]:
    # intermediates are only removable once the gene count table exists
    if not os.path.exists(result.counts.path):
        raise CleanupPreconditionError(
            f"Refusing to delete intermediates, {result.counts.path} does not exist",
            accession=result.sample.accession,
            stage="cleanup_intermediates",
        )
    removed = []
    for filename in [result.alignment.sam, *result.trimmed.unpaired]:
        if os.path.exists(filename):
            os.remove(filename)
            removed.append(filename)
    logger.info(f"Removed {len(removed)} intermediate files for {result.sample.accession}")
    return removed


def report(result_set: ResultSet, output_filename: str) -> str:
    # summarize per-sample metrics and check replicates per condition
    rows = []
    for result in result_set.results.values():
        rows.append(
            {
                "accession": result.sample.accession,
                "condition": result.sample.condition,
                "status": "completed",
                "failed_stage": "",
                "read_survival_rate": result.trimmed.survival_rate,
                "alignment_rate": result.alignment.alignment_rate,
                "n_genes": result.counts.n_genes,
            }
        )
        logger.info(
            f"{result.sample.accession} ({result.sample.condition}): read survival {result.trimmed.survival_rate}%, alignment rate {result.alignment.alignment_rate}%, {result.counts.n_genes} genes"
        )
    for failure in result_set.failures.values():
        rows.append(
            {
                "accession": failure.sample.accession,
                "condition": failure.sample.condition,
                "status": "failed",
                "failed_stage": failure.stage,
                "read_survival_rate": None,
                "alignment_rate": None,
                "n_genes": None,
            }
        )
        logger.error(f"{failure.sample.accession} failed at {failure.stage}: {failure.error}")
    for condition, results in result_set.by_condition().items():
        if len(results) < MIN_REPLICATES:
            logger.warning(
                f"Condition {condition} has {len(results)} replicate(s), at least {MIN_REPLICATES} are needed for reliable variance estimation"
            )
    summary = pd.DataFrame(rows)
    os.makedirs(os.path.dirname(output_filename), exist_ok=True)
    summary.to_csv(output_filename, sep="\t", index=False)
    logger.info(f"Run summary written to {output_filename}")
    return output_filename


def process_samples(
    samples: List[Sample], n_parallel_samples: int, **kwargs
) -> List[SampleOutcome]:
    # samples are independent apart from the index, which the builder guards
    if n_parallel_samples <= 1:
        return [run_sample(sample=sample, **kwargs) for sample in samples]
    logger.info(f"Processing N={len(samples)} samples with {n_parallel_samples} workers")
    with ThreadPoolExecutor(max_workers=n_parallel_samples) as pool:
        return list(pool.map(lambda sample: run_sample(sample=sample, **kwargs), samples))


def run_pipeline(
    samples: List[Sample],
    reference: Reference,
    output_directory: str,
    configs: Optional[Dict] = None,
    status_file: Optional[str] = None,
) -> ResultSet:
    """Turn paired-end samples into gene count tables collected in one directory.

    Run-level problems (invalid samples, missing reference files or an
    annotation with nothing in scope) raise before any sample starts. A
    failing stage only stops its own sample, which is then reported in
    `ResultSet.failures`.
    """
    configs = {**DEFAULTS, **(configs or {})}
    configs["programs"] = {**PROGRAMS, **(configs.get("programs") or {})}
    validate_samples(samples)
    require([reference.sequence, reference.annotation], stage="prepare_reference")
    annotation = restrict_annotation(reference)
    steps = identify_start_step(configs=configs, pipeline_steps=PIPELINE_STEPS)
    index_builder = IndexBuilder(
        reference=reference,
        program=configs["programs"]["hisat2-build"],
        timeout=configs["stage_timeout"],
    )
    os.makedirs(output_directory, exist_ok=True)

    # work through each sample
    outcomes = process_samples(
        samples=samples,
        n_parallel_samples=configs["n_parallel_samples"],
        steps=steps,
        reference=reference,
        annotation=annotation,
        index_builder=index_builder,
        configs=configs,
        status_file=status_file,
        output_directory=output_directory,
    )

    # collect the per-sample results once every sample finished
    result_set = ResultSet(output_directory=output_directory)
    for outcome in outcomes:
        if outcome.ok:
            try:
                outcome = collect_results(outcome, output_directory)
            except PipelineError as e:
                logger.error(f"Could not collect results for {outcome.sample.accession}: {e}")
                discard_counts(outcome.sample, output_directory)
                outcome = SampleFailure(sample=outcome.sample, stage="collect_results", error=e)
        result_set.add(outcome)
    result_set.count_matrix = aggregate_counts(
        list(result_set.results.values()),
        output_filename=os.path.join(output_directory, COUNT_MATRIX_FILE),
    )
    if configs["cleanup_intermediates"]:
        for accession, result in list(result_set.results.items()):
            try:
                cleanup_intermediates(result)
            except CleanupPreconditionError as e:
                logger.error(str(e))
                discard_counts(result.sample, output_directory)
                del result_set.results[accession]
                result_set.add(
                    SampleFailure(sample=result.sample, stage=e.stage, error=e)
                )
    result_set.summary = report(
        result_set, output_filename=os.path.join(output_directory, SUMMARY_FILE)
    )
    if result_set.failures:
        logger.error(
            f"Pipeline finished with {len(result_set.failures)} failed sample(s): {', '.join(result_set.failures)}"
        )
    else:
        logger.info("Pipeline completed successfully!")
    return result_set


def main():
    # read in command line arguments
    parser = argparse.ArgumentParser(
        description="Run paired-end RNA-Seq samples through to gene counts"
    )
    parser.add_argument(
        "-c",
        "--configuration_file",
        type=str,
        default="config.yaml",
        help="Path to the configuration file",
    )
    parser.add_argument(
        "-l",
        "--log_file",
        type=str,
        default="bulkcount.log",
        help="Path to the log file",
    )
    parser.add_argument(
        "-d",
        "--directory",
        type=str,
        default="./",
        help="Project directory used when the configuration does not set one",
    )
    parser.add_argument(
        "-s",
        "--status_file",
        type=str,
        default=STATUS_FILE,
        help="Path to the status file read by the web interface",
    )
    args = parser.parse_args()

    # configure logger and pipeline
    setup_logger(filename=args.log_file)
    try:
        configs = load_configs(filename=args.configuration_file)
        configs.setdefault("project_directory", args.directory)
        configs = configure_config(configs=configs)
        result_set = run_pipeline(
            samples=configs["samples"],
            reference=configs["reference"],
            output_directory=configs["results_directory"],
            configs=configs,
            status_file=args.status_file,
        )
    except PipelineError as e:
        logger.error(f"Pipeline aborted: {e}")
        write_status(args.status_file, "INFO: Pipeline aborted.")
        sys.exit(1)
    write_status(args.status_file, "INFO: Pipeline finished.")
    if not result_set.succeeded:
        sys.exit(1)


if __name__ == "__main__":
    main()
