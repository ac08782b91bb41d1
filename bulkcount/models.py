import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from bulkcount.constants import (
    ALIGNMENT_SUMMARY_SUFFIX,
    COUNTS_SUFFIX,
    INDEX_SUFFIXES,
    MIN_REPLICATES,
    R1_SUFFIX,
    R2_SUFFIX,
)


@dataclass(frozen=True)
class Sample:
    accession: str
    condition: str
    directory: str
    # prefetched .sra archive, otherwise fasterq-dump resolves the accession
    archive: Optional[str] = None

    def path(self, suffix: str) -> str:
        # build a per-sample file path scoped by the accession
        return os.path.join(self.directory, f"{self.accession}{suffix}")

    @property
    def label(self) -> str:
        return f"{self.condition}_{self.accession}"


@dataclass(frozen=True)
class Reference:
    sequence: str
    annotation: str
    index_name: str
    index_directory: str
    # chromosome the reference covers, None for the full annotation
    chromosome: Optional[str] = None

    @property
    def index_prefix(self) -> str:
        return os.path.join(self.index_directory, self.index_name)


@dataclass(frozen=True)
class ReadPair:
    r1: str
    r2: str

    @classmethod
    def for_sample(cls, sample: Sample) -> "ReadPair":
        return cls(r1=sample.path(R1_SUFFIX), r2=sample.path(R2_SUFFIX))


@dataclass(frozen=True)
class TrimmedReadPair:
    r1_paired: str
    r1_unpaired: str
    r2_paired: str
    r2_unpaired: str
    log: str
    input_pairs: Optional[int] = None
    surviving_pairs: Optional[int] = None

    @property
    def paired(self) -> ReadPair:
        return ReadPair(r1=self.r1_paired, r2=self.r2_paired)

    @property
    def unpaired(self) -> List[str]:
        return [self.r1_unpaired, self.r2_unpaired]

    @property
    def survival_rate(self) -> Optional[float]:
        # percentage of input pairs with both mates surviving trimming
        if not self.input_pairs or self.surviving_pairs is None:
            return None
        return 100.0 * self.surviving_pairs / self.input_pairs


@dataclass(frozen=True)
class ReferenceIndex:
    """Read-only handle to a built alignment index, shared across samples."""

    prefix: str

    @property
    def files(self) -> List[str]:
        return [f"{self.prefix}{suffix}" for suffix in INDEX_SUFFIXES]

    @property
    def sentinel(self) -> str:
        return self.files[0]

    @property
    def complete(self) -> bool:
        # an interrupted build can leave only some of the files behind
        return all(os.path.exists(filename) for filename in self.files)


@dataclass(frozen=True)
class AlignmentArtifact:
    sam: str
    summary: str
    alignment_rate: Optional[float] = None


@dataclass(frozen=True)
class RawCountTable:
    path: str


@dataclass(frozen=True)
class GeneCountTable:
    path: str
    n_genes: int


@dataclass(frozen=True)
class SampleResult:
    sample: Sample
    trimmed: TrimmedReadPair
    alignment: AlignmentArtifact
    counts: GeneCountTable
    # condition-qualified copies in the results directory
    result_counts: Optional[str] = None
    result_summary: Optional[str] = None
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class SampleFailure:
    sample: Sample
    stage: str
    error: Exception
    ok: bool = field(default=False, init=False)


SampleOutcome = Union[SampleResult, SampleFailure]


@dataclass
class ResultSet:
    output_directory: str
    results: Dict[str, SampleResult] = field(default_factory=dict)
    failures: Dict[str, SampleFailure] = field(default_factory=dict)
    count_matrix: Optional[str] = None
    summary: Optional[str] = None

    def add(self, outcome: SampleOutcome) -> None:
        # file the outcome under the sample accession
        if outcome.ok:
            self.results[outcome.sample.accession] = outcome
        else:
            self.failures[outcome.sample.accession] = outcome

    def by_condition(self) -> Dict[str, List[SampleResult]]:
        # group successful sample results under their condition label
        grouped: Dict[str, List[SampleResult]] = {}
        for result in self.results.values():
            grouped.setdefault(result.sample.condition, []).append(result)
        return grouped

    @property
    def replicates_sufficient(self) -> bool:
        grouped = self.by_condition()
        return bool(grouped) and all(
            len(results) >= MIN_REPLICATES for results in grouped.values()
        )

    @property
    def succeeded(self) -> bool:
        return not self.failures


def expected_result_paths(output_directory: str, sample: Sample) -> Dict[str, str]:
    # condition-qualified names that cannot collide between samples
    return {
        "counts": os.path.join(output_directory, f"{sample.label}{COUNTS_SUFFIX}"),
        "summary": os.path.join(
            output_directory, f"{sample.label}{ALIGNMENT_SUMMARY_SUFFIX}"
        ),
    }
