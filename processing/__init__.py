"""
SondeTrack tracking core: track, motion smoothing, landing detection,
telemetry source arbitration and the tracker that ties them together.
"""
