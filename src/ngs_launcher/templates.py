"""templates.py — text of the generated Slurm scripts.

Rendering is pure: :func:`render_concordance_script` only formats strings and
never touches the filesystem or runs a tool, so generated scripts can be
checked in isolation.  All shell and tool invocations live in the template
strings below.
"""
from __future__ import annotations

__all__ = [
    "CONCORDANCE_TEMPLATE",
    "concordance_job_name",
    "concordance_values",
    "render_concordance_script",
]

from typing import TYPE_CHECKING

from ngs_launcher.state import State

if TYPE_CHECKING:
    from ngs_launcher.config import LauncherConfig
    from ngs_launcher.layout import ConcordanceLayout
    from ngs_launcher.readiness import ConcordancePair

CONCORDANCE_TEMPLATE = """\
#!/bin/bash
#SBATCH --job-name={job_name}
#SBATCH --output={jobs_dir}/{array_id}.out
#SBATCH --error={jobs_dir}/{array_id}.err
#SBATCH --time={slurm_time}
#SBATCH --cpus-per-task {slurm_cpus_per_task}
#SBATCH --mem {slurm_mem}
#SBATCH --open-mode=append
#SBATCH --export=NONE
#SBATCH --get-user-env=60L
{extra_sbatch}
set -e
set -u

module load "{htslib_module}"
module load "{compare_genotype_calls_module}"
module load "{bedtools_module}"

bgzip -c "{work_dir}/{array_id}.FINAL.ExonFiltered.vcf" > "{work_dir}/{array_id}.FINAL.ExonFiltered.vcf.gz"
tabix -p vcf "{work_dir}/{array_id}.FINAL.ExonFiltered.vcf.gz"

java -XX:ParallelGCThreads=1 -Djava.io.tmpdir="{java_tmp_dir}" -Xmx9g \\
	-jar "${{EBROOTCOMPAREGENOTYPECALLS}}/CompareGenotypeCalls.jar" \\
	-d1 "{work_dir}/{array_id}.FINAL.ExonFiltered.vcf.gz" \\
	-D1 VCF \\
	-d2 "{work_dir}/{ngs_id}.FINAL.vcf.gz" \\
	-D2 VCF \\
	-ac \\
	--sampleMap "{samplesheet}" \\
	-o "{work_dir}" \\
	-sva

mv "{work_dir}.sample" "{results_dir}/"
mv "{work_dir}.variants" "{results_dir}/"

mv "{unit_started}" "{unit_finished}"
mv "{artifact}.started" "{artifact}.finished"
echo "finished"
"""


def concordance_values(
    unit_id: str,
    pair: ConcordancePair,
    config: LauncherConfig,
    layout: ConcordanceLayout,
) -> dict[str, str]:
    """Return the substitution values for :data:`CONCORDANCE_TEMPLATE`."""
    extra = []
    if config.slurm_partition:
        extra.append(f"#SBATCH --partition={config.slurm_partition}")
    if config.slurm_account:
        extra.append(f"#SBATCH --account={config.slurm_account}")
    unit_store = layout.unit_store()
    return {
        "job_name": concordance_job_name(pair),
        "array_id": pair.array_id,
        "ngs_id": pair.ngs_id,
        "samplesheet": str(pair.samplesheet),
        "jobs_dir": str(layout.jobs_dir),
        "results_dir": str(layout.results_dir),
        "java_tmp_dir": str(layout.java_tmp_dir),
        "work_dir": str(layout.tmp_dir(unit_id)),
        "artifact": str(layout.artifact(unit_id)),
        "unit_started": str(unit_store.marker(unit_id, State.STARTED)),
        "unit_finished": str(unit_store.marker(unit_id, State.FINISHED)),
        "slurm_time": config.slurm_time,
        "slurm_cpus_per_task": str(config.slurm_cpus_per_task),
        "slurm_mem": config.slurm_mem,
        "extra_sbatch": "\n".join(extra),
        "htslib_module": config.htslib_module,
        "compare_genotype_calls_module": config.compare_genotype_calls_module,
        "bedtools_module": config.bedtools_module,
    }


def concordance_job_name(pair: ConcordancePair) -> str:
    return f"Concordance_{pair.array_id}"


def render_concordance_script(
    unit_id: str,
    pair: ConcordancePair,
    config: LauncherConfig,
    layout: ConcordanceLayout,
    template: str = CONCORDANCE_TEMPLATE,
) -> str:
    """Return the Slurm script text for one concordance check.

    The script declares its resources, compares the exon-filtered array VCF
    with the SNV-only NGS VCF, moves the results into ``results/`` and, on
    success only (``set -e``), renames both the unit sentinel and its own
    ``.started`` marker to ``.finished``.
    """
    return template.format(**concordance_values(unit_id, pair, config, layout))
