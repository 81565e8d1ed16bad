__version__ = "0.1.0"

from nonlincal.errors              import (CalibrationError, ConfigurationError,
                                           ConfigurationMismatch, MissingInputTree,
                                           PeakFailure, UnopenableFile)
from nonlincal.config              import CalibrationConfig, ReferencePeak, load_config
from nonlincal.energy_matrix       import EnergyMatrix, Histogram
from nonlincal.peak_locator        import locate
from nonlincal.peak_fitter         import PeakFit, fit
from nonlincal.nonlinearity_spline import CalibrationPointSet, NonlinearitySpline, build
from nonlincal.residual_corrector  import ResidualCorrector
from nonlincal.calibration_engine  import (CalibrationRun, ChannelCalibration,
                                           ChannelState, DetectedPeak,
                                           NonlinearityCalibrator, calibrate)
