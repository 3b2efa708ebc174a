"""
JOSHUA Risk Calculation Engine.

Components:
- scorer: Expert-weighted, confidence-scaled aggregation of risk factors
- network: Dependency DAG, structure learning, snapshot registry
- inference: Junction tree construction and belief propagation
- bayesian: Posterior-divergence adjustment and historical prior blend
- trend: Mann-Kendall, Sen's slope, CUSUM change points, seasonal decomposition
- simulation: Parallel Monte Carlo escalation simulator
- uncertainty: Monte Carlo error propagation
- calibration: Historical calibration and walk-forward backtesting
- pipeline: Orchestration into one ComprehensiveRiskScore
"""
