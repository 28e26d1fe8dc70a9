"""fixelcfe: connectivity-based fixel enhancement for fixel-based analysis."""
