"""Default configuration dataclasses for fixelcfe."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from fixelcfe.config.validator import ConfigValidator


@dataclass
class ConnectivityConfig:
    """Configuration for fixel-fixel connectivity matrix construction.

    Attributes:
        angle_threshold: Maximum angle (degrees) between a streamline tangent
            and a fixel direction for the streamline to be assigned to it.
        connectivity_threshold: Minimum fraction of a fixel's streamlines that
            must be shared with another fixel for the connection to be kept.
        upsample_step: Streamline resampling step, as a fraction of the
            smallest voxel size.
        self_connect_isolated: Give fixels without surviving connections a
            single self-connection of weight 1.
        n_jobs: Number of worker threads (-1 for all cores).
        batch_size: Number of streamlines per work item.
    """
    angle_threshold: float = 45.0
    connectivity_threshold: float = 0.01
    upsample_step: float = 0.333
    self_connect_isolated: bool = True
    n_jobs: int = 1
    batch_size: int = 1024

    def validate(self) -> None:
        """Validate configuration parameters.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        validator = ConfigValidator()
        validator.validate_range(self.angle_threshold, 0.0, 90.0, "angle_threshold")
        validator.validate_fraction(self.connectivity_threshold, "connectivity_threshold")
        validator.validate_positive(self.upsample_step, "upsample_step")
        validator.validate_n_jobs(self.n_jobs)
        validator.validate_positive(self.batch_size, "batch_size")
        validator.raise_if_errors()


@dataclass
class CFEConfig:
    """Parameters of connectivity-based fixel enhancement.

    Attributes:
        dh: Height increment of the integrated formulation.
        e: Extent exponent.
        h: Height exponent.
        c: Connectivity exponent, applied once to the matrix.
        legacy: Use the legacy (not intrinsically normalised) form.
        integrate: Use the height-integrated formulation.
        skip_isolated: Clear fixels without connections to other fixels, so
            that they are never enhanced.
    """
    dh: float = 0.1
    e: float = 2.0
    h: float = 3.0
    c: float = 0.5
    legacy: bool = False
    integrate: bool = False
    skip_isolated: bool = True

    def validate(self) -> None:
        validator = ConfigValidator()
        validator.validate_range(self.dh, 0.001, 1.0, "cfe_dh")
        validator.validate_range(self.e, 0.0, 100.0, "cfe_e")
        validator.validate_range(self.h, 0.0, 100.0, "cfe_h")
        validator.validate_range(self.c, 0.0, 100.0, "cfe_c")
        validator.raise_if_errors()


@dataclass
class PermutationConfig:
    """Configuration of permutation testing.

    Attributes:
        nshuffles: Number of shuffles for the null distribution.
        nshuffles_nonstationarity: Number of shuffles for the empirical statistic.
        nonstationarity: Perform non-stationarity adjustment.
        skew_nonstationarity: Skew (generalised mean power) of the empirical statistic.
        strong: Strong FWE control across hypotheses.
        notest: Skip permutation testing.
        errors: Error assumption: "ee" (permutations), "ise" (sign-flips) or "both".
        exchange_within: File of block labels; shuffle only within blocks.
        exchange_whole: File of block labels; shuffle blocks as wholes.
        permutations_file: File of explicit permutations (one per column).
        random_state: Random seed.
        n_jobs: Number of worker threads (-1 for all cores).
    """
    nshuffles: int = 5000
    nshuffles_nonstationarity: int = 5000
    nonstationarity: bool = False
    skew_nonstationarity: float = 1.0
    strong: bool = False
    notest: bool = False
    errors: str = "ee"
    exchange_within: Optional[Path] = None
    exchange_whole: Optional[Path] = None
    permutations_file: Optional[Path] = None
    random_state: Optional[int] = None
    n_jobs: int = 1

    def validate(self) -> None:
        validator = ConfigValidator()
        validator.validate_positive(self.nshuffles, "nshuffles")
        validator.validate_positive(self.nshuffles_nonstationarity, "nshuffles_nonstationarity")
        validator.validate_positive(self.skew_nonstationarity, "skew_nonstationarity")
        validator.validate_choice(self.errors, ["ee", "ise", "both"], "errors")
        validator.validate_n_jobs(self.n_jobs)
        if self.exchange_within is not None and self.exchange_whole is not None:
            validator.errors.append("exchange_within and exchange_whole are mutually exclusive")
        for name in ("exchange_within", "exchange_whole", "permutations_file"):
            value = getattr(self, name)
            if value is not None:
                validator.validate_file_exists(value, name)
        if self.permutations_file is not None and self.errors != "ee":
            validator.errors.append("permutations_file can only be used with errors='ee'")
        validator.raise_if_errors()


@dataclass
class SmoothingConfig:
    """Configuration of connectivity-based fixel data smoothing.

    Attributes:
        fwhm: Full width at half maximum of the Gaussian kernel (mm).
        threshold: Minimum smoothing weight retained.
        mask: Optional fixel mask file.
    """
    fwhm: float = 10.0
    threshold: float = 0.01
    mask: Optional[Path] = None

    def validate(self) -> None:
        validator = ConfigValidator()
        validator.validate_positive(self.fwhm, "fwhm")
        validator.validate_fraction(self.threshold, "threshold")
        validator.raise_if_errors()


@dataclass
class ConnectConfig:
    """Configuration of connected-component labelling of fixel data.

    Attributes:
        value_threshold: Fixels with a value above this are labelled.
        connectivity_threshold: Minimum connectivity for two fixels to be adjacent.
    """
    value_threshold: float = 0.5
    connectivity_threshold: float = 0.1

    def validate(self) -> None:
        validator = ConfigValidator()
        validator.validate_fraction(self.connectivity_threshold, "connectivity_threshold")
        validator.raise_if_errors()


@dataclass
class StatsConfig:
    """Configuration for fixel-based statistical analysis.

    Attributes:
        mask: Optional fixel mask restricting processing.
        columns: Files listing, per subject, a fixel data file providing an
            element-wise design matrix column.
        ftests: Optional F-test matrix file.
        fonly: Only test the F-tests.
        save_plots: Save design matrix and null distribution figures.
        cfe: CFE parameters.
        permutation: Permutation testing parameters.
    """
    mask: Optional[Path] = None
    columns: List[Path] = field(default_factory=list)
    ftests: Optional[Path] = None
    fonly: bool = False
    save_plots: bool = True
    cfe: CFEConfig = field(default_factory=CFEConfig)
    permutation: PermutationConfig = field(default_factory=PermutationConfig)

    def validate(self) -> None:
        """Validate configuration parameters, including nested sections.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        validator = ConfigValidator()
        if self.mask is not None:
            validator.validate_file_exists(self.mask, "mask")
        for column in self.columns:
            validator.validate_file_exists(column, "column")
        if self.ftests is not None:
            validator.validate_file_exists(self.ftests, "ftests")
        if self.fonly and self.ftests is None:
            validator.errors.append("fonly requires an F-test matrix (ftests)")
        validator.raise_if_errors()

        self.cfe.validate()
        self.permutation.validate()
