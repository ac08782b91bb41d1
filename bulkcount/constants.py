# per-sample pipeline steps, in order, from archived reads to gene counts
PIPELINE_STEPS = [
    "extract_fastq",
    "qc_raw_fastq",
    "trim_fastq",
    "qc_trimmed_fastq",
    "build_index",
    "align_fastq",
    "count_features",
    "reformat_counts",
]
# default external programs, overridable through the `programs` config entry
PROGRAMS = {
    "fasterq-dump": "fasterq-dump",
    "fastqc": "fastqc",
    "trimmomatic": "trimmomatic",
    "hisat2-build": "hisat2-build",
    "hisat2": "hisat2",
    "featureCounts": "featureCounts",
}
# default configuration values
DEFAULTS = {
    "project_directory": "./",
    "results_directory": "Results",
    "raw_fastqc_directory": "fastqc_raw",
    "trimmed_fastqc_directory": "fastqc_trimmed",
    "pipeline_start_step": "extract_fastq",
    "n_cores": 8,
    "extract_threads": 4,
    "adapter_clip_file": "TruSeq3-PE.fa",
    "illuminaclip_settings": "2:30:10",
    "synthetic_adapter_name": "polyG",
    "synthetic_adapter_base": "G",
    "synthetic_adapter_length": 50,
    "headcrop": 12,
    "sliding_window": "4:20",
    "trailing": 10,
    "minlen": 36,
    "feature_type": "exon",
    "attribute_type": "gene_id",
    "featurecounts_options": [],
    "cleanup_intermediates": True,
    "n_parallel_samples": 1,
    "stage_timeout": None,
}
# file suffixes appended to the sample accession
R1_SUFFIX = "_1.fastq"
R2_SUFFIX = "_2.fastq"
PAIRED_SUFFIX = "_paired.fastq"
UNPAIRED_SUFFIX = "_unpaired.fastq"
TRIMMER_LOG_SUFFIX = "_trimmomatic.log"
ADAPTER_SUFFIX = "_polyG.fa"
SAM_SUFFIX = "_aligned.sam"
ALIGNMENT_SUMMARY_SUFFIX = "_alignment_summary.txt"
RAW_COUNTS_SUFFIX = "_gene_counts.raw.txt"
COUNTS_SUFFIX = "_gene_counts.txt"
# files making up a complete hisat2 index
INDEX_SUFFIXES = [f".{i}.ht2" for i in range(1, 9)]
# column of featureCounts output holding the counts (zero-based)
COUNT_COLUMN = 6
# aggregated outputs written to the results directory
COUNT_MATRIX_FILE = "gene_count_matrix.csv"
SUMMARY_FILE = "pipeline_summary.tsv"
# replicates needed per condition before variance estimation is meaningful
MIN_REPLICATES = 3
# number of trailing tool output lines included in failure messages
ERROR_TAIL_LINES = 5
# location of the status file
STATUS_FILE = "status.log"
