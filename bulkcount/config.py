import logging
import os
from typing import Dict, List

import yaml

from bulkcount.constants import DEFAULTS, PIPELINE_STEPS, PROGRAMS
from bulkcount.errors import ConfigurationError
from bulkcount.models import Reference, Sample

# create a logger object writing to the given file
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def setup_logger(filename: str) -> None:
    # set up logger to write to a given file
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s: %(message)s",
        handlers=[logging.FileHandler(filename)],
    )
    logger.info("Initialized logging for bulkcount")


def load_configs(filename: str) -> Dict:
    # read in the configuration file
    logger.info(f"Loading configuration from {filename}")
    if not os.path.exists(filename):
        raise ConfigurationError(f"Configuration file {filename} does not exist")
    with open(filename, "r") as f:
        configs = yaml.safe_load(f)
    if not isinstance(configs, dict):
        raise ConfigurationError(f"Configuration file {filename} is not a mapping")
    logger.info("Configuration loaded successfully")
    return configs


def resolve_path(project_directory: str, path: str) -> str:
    # interpret relative paths against the project directory
    if os.path.isabs(path):
        return path
    return os.path.normpath(os.path.join(project_directory, path))


def configure_config(configs: Dict) -> Dict:
    # fill in defaults for anything the configuration file leaves out
    for key, value in DEFAULTS.items():
        configs.setdefault(key, value)
    configs["programs"] = {**PROGRAMS, **(configs.get("programs") or {})}
    project_directory = os.path.abspath(configs["project_directory"])
    configs["project_directory"] = project_directory
    configs["results_directory"] = resolve_path(
        project_directory, configs["results_directory"]
    )
    configs["adapter_clip_file"] = resolve_path(
        project_directory, configs["adapter_clip_file"]
    )
    # validate numeric settings
    for key in ["n_cores", "extract_threads", "headcrop", "trailing", "minlen"]:
        if not isinstance(configs[key], int) or configs[key] < 0:
            raise ConfigurationError(f"{key} must be a non-negative integer")
    if not isinstance(configs["n_parallel_samples"], int) or configs["n_parallel_samples"] < 1:
        raise ConfigurationError("n_parallel_samples must be a positive integer")
    if configs["pipeline_start_step"] not in PIPELINE_STEPS:
        raise ConfigurationError(
            f"Unknown pipeline start step: {configs['pipeline_start_step']}"
        )
    configs["samples"] = build_samples(configs)
    configs["reference"] = build_reference(configs)
    return configs


def build_samples(configs: Dict) -> List[Sample]:
    # turn the sample entries into sample descriptors
    entries = configs.get("samples") or []
    if not entries:
        raise ConfigurationError("At least one sample must be configured")
    project_directory = configs["project_directory"]
    samples = []
    for entry in entries:
        if "accession" not in entry or "condition" not in entry:
            raise ConfigurationError(
                f"Sample entry {entry} needs both an accession and a condition"
            )
        accession = str(entry["accession"])
        archive = entry.get("archive")
        samples.append(
            Sample(
                accession=accession,
                condition=str(entry["condition"]),
                directory=resolve_path(
                    project_directory, entry.get("directory", accession)
                ),
                archive=resolve_path(project_directory, archive) if archive else None,
            )
        )
    validate_samples(samples)
    return samples


def validate_samples(samples: List[Sample]) -> None:
    # require a non-empty sample list with unique accessions
    if not samples:
        raise ConfigurationError("At least one sample must be configured")
    accessions = [sample.accession for sample in samples]
    duplicates = sorted({a for a in accessions if accessions.count(a) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate sample accessions: {', '.join(duplicates)}")


def build_reference(configs: Dict) -> Reference:
    # gather the reference bundle shared by every sample
    entry = configs.get("reference") or {}
    for key in ["sequence", "annotation"]:
        if key not in entry:
            raise ConfigurationError(f"reference.{key} must be configured")
    project_directory = configs["project_directory"]
    sequence = resolve_path(project_directory, entry["sequence"])
    chromosome = entry.get("chromosome")
    return Reference(
        sequence=sequence,
        annotation=resolve_path(project_directory, entry["annotation"]),
        index_name=entry.get(
            "index_name", os.path.splitext(os.path.basename(sequence))[0]
        ),
        index_directory=resolve_path(
            project_directory, entry.get("index_directory", "Reference")
        ),
        chromosome=str(chromosome) if chromosome is not None else None,
    )


def identify_start_step(configs: Dict, pipeline_steps: List[str]) -> List[str]:
    # retrieve the requested step to start the pipeline from
    logger.info("Identifying starting step for the pipeline")
    pipeline_start_step = configs["pipeline_start_step"]
    # identify the index of the start step in the pipeline steps
    start_step_index = pipeline_steps.index(pipeline_start_step)
    # subset the pipeline steps based on the requested starting step
    relevant_steps = pipeline_steps[start_step_index:]
    return relevant_steps
