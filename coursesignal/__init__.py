"""CourseSignal attribution engine."""
