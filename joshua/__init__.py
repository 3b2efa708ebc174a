"""
JOSHUA: Nuclear Risk Calculation Engine.

Architecture:
    joshua/
    ├── config.py        # Pydantic settings (weights, thresholds, engine knobs)
    ├── core/            # Exceptions, logging, telemetry context
    ├── models/          # Risk factors and the assessment score object
    └── engine/          # Scorer, Bayesian network, trend, simulation,
                         # uncertainty, calibration, pipeline

Data Flow:
    Factors → Weighted Scorer → Bayesian Network (adjust)
    → [Trend Analyzer, Monte Carlo Simulator, Uncertainty Propagator]
    → Risk Calculation Pipeline → ComprehensiveRiskScore

Boundaries:
    - The engine performs no file, network or database access
    - Factors come in already normalized; one score object goes out
    - Every fallback is flagged on the result, never applied silently

Version: 1.0.0
"""

__version__ = "1.0.0"
