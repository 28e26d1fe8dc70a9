"""Argument parsing for the ``fixelcfe`` command and its subcommands.

Options default to None so that only the values given on the command line
override the configuration file and the dataclass defaults.
"""

import argparse
import textwrap
from pathlib import Path
from typing import Any, Dict, Iterable

from colorama import Fore, Style

from fixelcfe.core.version import __version__

BOLD = Style.BRIGHT
RESET = Style.RESET_ALL


def _heading(text: str) -> str:
    return f'{BOLD}{text}{RESET}'


class ColoredHelpFormatter(argparse.RawDescriptionHelpFormatter):
    """Help formatter with highlighted section headings and a wider layout."""

    def __init__(self, prog, indent_increment=2, max_help_position=40, width=100):
        super().__init__(prog, indent_increment, max_help_position, width)

    def _format_usage(self, usage, actions, groups, prefix):
        return super()._format_usage(usage, actions, groups,
                                     prefix or _heading('Usage:') + ' ')

    def start_section(self, heading):
        super().start_section(f'{BOLD}{Fore.CYAN}{heading}{RESET}' if heading else heading)


def _common_parser() -> argparse.ArgumentParser:
    """Options shared by every subcommand."""
    common = argparse.ArgumentParser(add_help=False)
    general = common.add_argument_group(_heading('General Options'))
    general.add_argument("-v", "--verbose", action="store_true",
                         help="Also log DEBUG messages.")
    general.add_argument("-c", "--config", type=Path, metavar="FILE",
                         help="YAML or JSON file of parameters for the command; "
                              "options given on the command line take precedence.")
    general.add_argument("--log-file", type=Path, metavar="FILE", dest="log_file",
                         help="Also write log messages to this file.")
    general.add_argument("--n-jobs", type=int, metavar="N", dest="n_jobs",
                         help="Number of worker threads (-1 for all cores). Default: 1.")
    return common

def _add_connectivity_parser(subparsers, common: argparse.ArgumentParser) -> None:
    parser = subparsers.add_parser(
        "connectivity",
        parents=[common],
        formatter_class=ColoredHelpFormatter,
        help="Generate a fixel-fixel connectivity matrix from a tractogram.",
        description="Generate a fixel-fixel connectivity matrix from a whole-brain "
                    "tractogram. Every streamline is assigned to the fixels it "
                    "traverses, and the resulting streamline counts are thresholded "
                    "and normalised.",
    )
    parser.add_argument("fixel_dir", type=Path, metavar="FIXEL_DIR",
                        help="Fixel template directory (index and directions images).")
    parser.add_argument("tracks", type=Path, metavar="TRACKS",
                        help="Whole-brain tractogram (.tck or .trk).")
    parser.add_argument("matrix_out", type=Path, metavar="MATRIX_OUT",
                        help="Output normalised connectivity matrix.")

    options = parser.add_argument_group(_heading('Connectivity Options'))
    options.add_argument("--mask", type=Path, metavar="FILE",
                         help="Fixel mask; streamlines are only assigned to fixels inside it.")
    options.add_argument("--angle", type=float, metavar="DEG", dest="angle_threshold",
                         help="Maximum angle between a streamline and a fixel for the "
                              "streamline to be assigned to it. Default: 45.")
    options.add_argument("--threshold", type=float, metavar="VALUE",
                         dest="connectivity_threshold",
                         help="Minimum connectivity retained in the normalised matrix, "
                              "as a fraction of the streamlines of each fixel. Default: 0.01.")
    options.add_argument("--upsample", type=float, metavar="FRACTION", dest="upsample_step",
                         help="Streamline resampling step as a fraction of the voxel size. "
                              "Default: 0.333.")
    options.add_argument("--batch-size", type=int, metavar="N", dest="batch_size",
                         help="Number of streamlines per work item. Default: 1024.")
    options.add_argument("--init-out", type=Path, metavar="FILE", dest="init_out",
                         help="Also save the initial (streamline count) matrix.")


def _add_cfestats_parser(subparsers, common: argparse.ArgumentParser) -> None:
    parser = subparsers.add_parser(
        "cfestats",
        parents=[common],
        formatter_class=ColoredHelpFormatter,
        help="Fixel-based analysis using CFE and non-parametric statistics.",
        description="Fixel-based analysis using connectivity-based fixel enhancement "
                    "and non-parametric permutation testing.",
        epilog=textwrap.dedent(f"""
        {BOLD}Outputs{RESET} (written to OUT_DIR, one value per fixel,
        NaN outside the mask; a _t1/_F1 postfix is added when several hypotheses
        are tested):

          beta<i>, abs_effect, std_effect, std_dev, cond
          tvalue / Fvalue, cfe, cfe_empirical
          fwe_pvalue, uncorrected_pvalue, null_contributions, null_dist.txt
        """),
    )
    parser.add_argument("fixel_dir", type=Path, metavar="FIXEL_DIR",
                        help="Fixel template directory containing the subject data files.")
    parser.add_argument("subjects", type=Path, metavar="SUBJECTS",
                        help="Text file listing one fixel data file per subject.")
    parser.add_argument("design", type=Path, metavar="DESIGN",
                        help="Design matrix, one row per subject.")
    parser.add_argument("contrast", type=Path, metavar="CONTRAST",
                        help="Contrast matrix, one row per t-test.")
    parser.add_argument("matrix", type=Path, metavar="MATRIX",
                        help="Normalised fixel-fixel connectivity matrix.")
    parser.add_argument("output_dir", type=Path, metavar="OUT_DIR",
                        help="Output fixel directory.")

    glm = parser.add_argument_group(_heading('GLM Options'))
    glm.add_argument("--mask", type=Path, metavar="FILE",
                     help="Fixel mask restricting the analysis.")
    glm.add_argument("--column", type=Path, metavar="FILE", action="append", dest="columns",
                     help="Add an element-wise design matrix column: a text file listing "
                          "one fixel data file per subject. Can be given several times.")
    glm.add_argument("--ftests", type=Path, metavar="FILE",
                     help="F-test matrix: one row per F-test, one 0/1 entry per contrast row.")
    glm.add_argument("--fonly", action="store_true", default=None,
                     help="Only test the F-tests.")

    perm = parser.add_argument_group(_heading('Permutation Options'))
    perm.add_argument("--notest", action="store_true", default=None,
                      help="Do not perform permutation testing.")
    perm.add_argument("--nshuffles", type=int, metavar="N",
                      help="Number of shuffles. Default: 5000.")
    perm.add_argument("--errors", choices=["ee", "ise", "both"],
                      help="Error assumption: exchangeable (permutations), independent "
                           "and symmetric (sign-flips), or both. Default: ee.")
    perm.add_argument("--exchange-within", type=Path, metavar="FILE", dest="exchange_within",
                      help="Block label per subject; shuffle only within blocks.")
    perm.add_argument("--exchange-whole", type=Path, metavar="FILE", dest="exchange_whole",
                      help="Block label per subject; shuffle blocks as wholes.")
    perm.add_argument("--permutations", type=Path, metavar="FILE", dest="permutations_file",
                      help="Explicit permutations, one per column (1-based).")
    perm.add_argument("--strong", action="store_true", default=None,
                      help="Strong familywise error control across hypotheses.")
    perm.add_argument("--nonstationarity", action="store_true", default=None,
                      help="Perform non-stationarity correction.")
    perm.add_argument("--nshuffles-nonstationarity", type=int, metavar="N",
                      dest="nshuffles_nonstationarity",
                      help="Number of shuffles for the empirical statistic. Default: 5000.")
    perm.add_argument("--skew-nonstationarity", type=float, metavar="VALUE",
                      dest="skew_nonstationarity",
                      help="Skew of the empirical statistic. Default: 1.")
    perm.add_argument("--seed", type=int, metavar="N", dest="random_state",
                      help="Random seed for reproducible shuffles.")

    cfe = parser.add_argument_group(_heading('CFE Options'))
    cfe.add_argument("--cfe-dh", type=float, metavar="VALUE", dest="dh",
                     help="Height increment of the integrated form. Default: 0.1.")
    cfe.add_argument("--cfe-e", type=float, metavar="VALUE", dest="e",
                     help="Extent exponent. Default: 2.")
    cfe.add_argument("--cfe-h", type=float, metavar="VALUE", dest="h",
                     help="Height exponent. Default: 3.")
    cfe.add_argument("--cfe-c", type=float, metavar="VALUE", dest="c",
                     help="Connectivity exponent. Default: 0.5.")
    cfe.add_argument("--cfe-legacy", action="store_true", default=None, dest="legacy",
                     help="Use the legacy (non-normalised) form of CFE.")
    cfe.add_argument("--cfe-integrate", action="store_true", default=None, dest="integrate",
                     help="Use the height-integrated form of CFE.")

    output = parser.add_argument_group(_heading('Output Options'))
    output.add_argument("--no-plots", action="store_false", default=None, dest="save_plots",
                        help="Do not save design matrix and null distribution figures.")


def _add_smooth_parser(subparsers, common: argparse.ArgumentParser) -> None:
    parser = subparsers.add_parser(
        "smooth",
        parents=[common],
        formatter_class=ColoredHelpFormatter,
        help="Smooth fixel data using fixel-fixel connectivity.",
        description="Smooth fixel data, combining connectivity with a Gaussian "
                    "kernel of the distance between fixels.",
    )
    parser.add_argument("fixel_dir", type=Path, metavar="FIXEL_DIR",
                        help="Fixel template directory.")
    parser.add_argument("matrix", type=Path, metavar="MATRIX",
                        help="Normalised fixel-fixel connectivity matrix.")
    parser.add_argument("in_data", type=Path, metavar="IN_DATA", help="Input fixel data file.")
    parser.add_argument("out_data", type=Path, metavar="OUT_DATA", help="Output fixel data file.")
    parser.add_argument("--fwhm", type=float, metavar="MM",
                        help="Full width at half maximum of the kernel. Default: 10.")
    parser.add_argument("--threshold", type=float, metavar="VALUE",
                        help="Minimum smoothing weight retained. Default: 0.01.")
    parser.add_argument("--mask", type=Path, metavar="FILE", help="Fixel mask.")


def _add_connect_parser(subparsers, common: argparse.ArgumentParser) -> None:
    parser = subparsers.add_parser(
        "connect",
        parents=[common],
        formatter_class=ColoredHelpFormatter,
        help="Label connected clusters of supra-threshold fixels.",
        description="Label connected clusters of fixels above a value threshold; "
                    "clusters are numbered by decreasing size.",
    )
    parser.add_argument("matrix", type=Path, metavar="MATRIX",
                        help="Normalised fixel-fixel connectivity matrix.")
    parser.add_argument("in_data", type=Path, metavar="IN_DATA", help="Input fixel data file.")
    parser.add_argument("out_data", type=Path, metavar="OUT_DATA",
                        help="Output fixel data file of cluster labels.")
    parser.add_argument("--value", type=float, metavar="VALUE", dest="value_threshold",
                        help="Fixel value threshold. Default: 0.5.")
    parser.add_argument("--connectivity", type=float, metavar="VALUE",
                        dest="connectivity_threshold",
                        help="Minimum connectivity between adjacent fixels. Default: 0.1.")


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser.

    Returns:
        Configured ArgumentParser instance with one subparser per command.
    """
    description = textwrap.dedent(f"""
    {BOLD}{Fore.GREEN}fixelcfe v{__version__}{RESET}
    Connectivity-based fixel enhancement for whole-brain fixel-based analysis.

    {BOLD}Commands:{RESET}
      • {Fore.CYAN}connectivity{RESET}  - Build the fixel-fixel connectivity matrix
      • {Fore.CYAN}cfestats{RESET}      - GLM, CFE and permutation testing
      • {Fore.CYAN}smooth{RESET}        - Connectivity-based smoothing of fixel data
      • {Fore.CYAN}connect{RESET}       - Connected-component labelling of fixel data
    """)

    epilog = textwrap.dedent(f"""
    {BOLD}Example:{RESET}

      {Fore.YELLOW}# Build the matrix, smooth the data, then test{RESET}
      fixelcfe connectivity template/ tracks.tck matrix.txt
      fixelcfe smooth template/ matrix.txt fd.nii.gz fd_smooth.nii.gz
      fixelcfe cfestats template/ files.txt design.txt contrast.txt matrix.txt stats/
    """)

    parser = argparse.ArgumentParser(
        prog="fixelcfe",
        description=description,
        epilog=epilog,
        formatter_class=ColoredHelpFormatter,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"fixelcfe {__version__}",
        help="Show program version and exit.",
    )

    common = _common_parser()
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)
    _add_connectivity_parser(subparsers, common)
    _add_cfestats_parser(subparsers, common)
    _add_smooth_parser(subparsers, common)
    _add_connect_parser(subparsers, common)
    return parser


def cli_overrides(args: argparse.Namespace, names: Iterable[str]) -> Dict[str, Any]:
    """Values of the options in ``names`` that were given on the command line."""
    values = {name: getattr(args, name, None) for name in names}
    return {name: value for name, value in values.items() if value is not None}
