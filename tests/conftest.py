import os
import re
import shutil
import subprocess
from copy import deepcopy

import pytest

from bulkcount import stages
from bulkcount.constants import DEFAULTS, PROGRAMS
from bulkcount.models import Reference, Sample

GTF_HEADER = """#!genome-build GRCh38.p14
#!genome-version GRCh38
"""
GTF_ROWS = [
    ("1", "gene", 11869, 14409, "ENSG00000290825"),
    ("1", "exon", 11869, 12227, "ENSG00000290825"),
    ("1", "exon", 12613, 12721, "ENSG00000290825"),
    ("1", "gene", 14404, 29570, "ENSG00000227232"),
    ("1", "exon", 29534, 29570, "ENSG00000227232"),
    ("1", "gene", 65419, 71585, "ENSG00000186092"),
    ("1", "exon", 65419, 65433, "ENSG00000186092"),
    ("2", "gene", 38814, 46870, "ENSG00000184731"),
    ("2", "exon", 38814, 41627, "ENSG00000184731"),
]
CHR1_GENES = ["ENSG00000290825", "ENSG00000227232", "ENSG00000186092"]
FASTQ_RECORD = "@read1\nACGTACGTACGTACGTACGTACGTACGTACGTACGTACGTACGT\n+\nIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIIII\n"


def gtf_line(chromosome, feature, start, end, gene_id):
    attributes = f'gene_id "{gene_id}"; gene_version "1";'
    return "\t".join(
        [chromosome, "ensembl", feature, str(start), str(end), ".", "+", ".", attributes]
    )


class FakeProcess:
    def __init__(self, returncode: int, timeout: bool = False) -> None:
        self.returncode = returncode
        self.timeout = timeout
        self.killed = False

    def wait(self, timeout=None):
        if self.timeout and not self.killed:
            raise subprocess.TimeoutExpired(cmd="fake", timeout=timeout)
        return self.returncode

    def kill(self):
        self.killed = True


class FakeTools:
    """Stands in for the external programs by writing plausible outputs."""

    def __init__(self) -> None:
        self.commands = []
        # tool name -> accessions (or None for every call) whose run fails
        self.failures = {}
        # tool name -> accessions (or None for every call) that cannot be launched
        self.missing = {}
        self.timeouts = set()
        self.processes = []

    def fail(self, tool: str, accession=None) -> None:
        self.failures.setdefault(tool, set()).add(accession)

    def uninstall(self, tool: str, accession=None) -> None:
        self.missing.setdefault(tool, set()).add(accession)

    @staticmethod
    def _matches(accessions, joined) -> bool:
        return None in accessions or any(a in joined for a in accessions if a)

    def calls(self, tool: str):
        return [command for command in self.commands if os.path.basename(command[0]) == tool]

    def __call__(self, command, log_filename):
        command = [str(part) for part in command]
        self.commands.append(command)
        tool = os.path.basename(command[0])
        joined = " ".join(command)
        if self._matches(self.missing.get(tool, set()), joined):
            raise FileNotFoundError(2, "No such file or directory", command[0])
        if tool in self.timeouts:
            process = FakeProcess(0, timeout=True)
            self.processes.append(process)
            return process
        if self._matches(self.failures.get(tool, set()), joined):
            with open(log_filename, "w") as f:
                f.write(f"{tool}: fatal error while processing\n")
            process = FakeProcess(1)
            self.processes.append(process)
            return process
        getattr(self, "_" + tool.replace("-", "_"))(command, log_filename)
        process = FakeProcess(0)
        self.processes.append(process)
        return process

    def _fasterq_dump(self, command, log_filename):
        outdir = command[command.index("--outdir") + 1]
        accession = os.path.basename(command[1]).replace(".sra", "")
        for mate in ["1", "2"]:
            with open(os.path.join(outdir, f"{accession}_{mate}.fastq"), "w") as f:
                f.write(FASTQ_RECORD)
        with open(log_filename, "w") as f:
            f.write("spots read      : 1\nreads written   : 2\n")

    def _fastqc(self, command, log_filename):
        outdir = command[command.index("-o") + 1]
        for filename in command[1 : command.index("-o")]:
            stem = os.path.basename(filename).replace(".fastq", "")
            open(os.path.join(outdir, f"{stem}_fastqc.html"), "w").close()

    def _trimmomatic(self, command, log_filename):
        r1, r2, r1p, r1u, r2p, r2u = command[3:9]
        shutil.copyfile(r1, r1p)
        shutil.copyfile(r2, r2p)
        open(r1u, "w").close()
        open(r2u, "w").close()
        with open(log_filename, "w") as f:
            f.write(
                "TrimmomaticPE: Started with arguments:\n"
                "Input Read Pairs: 200 Both Surviving: 150 (75.00%) Forward Only Surviving: 30 (15.00%) "
                "Reverse Only Surviving: 10 (5.00%) Dropped: 10 (5.00%)\n"
                "TrimmomaticPE: Completed successfully\n"
            )

    def _hisat2_build(self, command, log_filename):
        fasta, prefix = command[1], command[2]
        with open(fasta) as f:
            names = [line[1:].split()[0] for line in f if line.startswith(">")]
        with open(prefix + ".1.ht2", "w") as f:
            f.write("\n".join(names) + "\n")
        for i in range(2, 9):
            open(f"{prefix}.{i}.ht2", "w").close()

    def _hisat2(self, command, log_filename):
        prefix = command[command.index("-x") + 1]
        sam = command[command.index("-S") + 1]
        summary = command[command.index("--summary-file") + 1]
        with open(prefix + ".1.ht2") as f:
            names = [line.strip() for line in f if line.strip()]
        with open(sam, "w") as f:
            for name in names:
                f.write(f"@SQ\tSN:{name}\tLN:248956422\n")
        with open(summary, "w") as f:
            f.write(
                "1 reads; of these:\n"
                "  1 (100.00%) were paired; of these:\n"
                "87.50% overall alignment rate\n"
            )

    def _featureCounts(self, command, log_filename):
        annotation = command[command.index("-a") + 1]
        out = command[command.index("-o") + 1]
        feature_type = command[command.index("-t") + 1]
        sam = command[-1]
        with open(sam) as f:
            scope = {
                match.group(1) for match in re.finditer(r"SN:(\S+)", f.read())
            }
        # every annotated gene is listed, genes off the aligned sequences count zero
        genes = {}
        with open(annotation) as f:
            for line in f:
                if line.startswith("#") or not line.strip():
                    continue
                fields = line.rstrip("\n").split("\t")
                gene_id = re.search(r'gene_id "([^"]+)"', fields[8]).group(1)
                if fields[2] == feature_type and gene_id not in genes:
                    genes[gene_id] = fields[0]
        with open(out, "w") as f:
            f.write(f"# Program:featureCounts v2.0.6; Command:\"{' '.join(command)}\"\n")
            f.write(f"Geneid\tChr\tStart\tEnd\tStrand\tLength\t{sam}\n")
            for i, (gene_id, chromosome) in enumerate(genes.items()):
                count = i * 3 if chromosome in scope else 0
                f.write(f"{gene_id}\t{chromosome}\t100\t200\t+\t101\t{count}\n")
        with open(out + ".summary", "w") as f:
            f.write(f"Status\t{sam}\nAssigned\t{len(genes)}\n")


@pytest.fixture
def fake_tools(monkeypatch):
    tools = FakeTools()
    monkeypatch.setattr(stages, "run", tools)
    return tools


@pytest.fixture
def project(tmp_path):
    reference_directory = tmp_path / "Reference"
    reference_directory.mkdir()
    sequence = reference_directory / "chr1.fa"
    sequence.write_text(">1 dna:chromosome chromosome:GRCh38:1:1:248956422:1 REF\nACGTNNNNACGT\n")
    annotation = reference_directory / "annotation.gtf"
    annotation.write_text(
        GTF_HEADER + "\n".join(gtf_line(*row) for row in GTF_ROWS) + "\n"
    )
    adapters = reference_directory / "TruSeq3-PE.fa"
    adapters.write_text(">PrefixPE/1\nTACACTCTTTCCCTACACGACGCTCTTCCGATCT\n")
    samples = [
        Sample(accession="SRR_A", condition="untreated", directory=str(tmp_path / "Biosample_1")),
        Sample(accession="SRR_B", condition="treated", directory=str(tmp_path / "Biosample_2")),
    ]
    reference = Reference(
        sequence=str(sequence),
        annotation=str(annotation),
        index_name="GRCh38_chr1",
        index_directory=str(reference_directory),
        chromosome="1",
    )
    configs = deepcopy(DEFAULTS)
    configs["programs"] = dict(PROGRAMS)
    configs["adapter_clip_file"] = str(adapters)
    configs["project_directory"] = str(tmp_path)
    return {
        "root": tmp_path,
        "samples": samples,
        "reference": reference,
        "configs": configs,
        "output_directory": str(tmp_path / "Results"),
    }
