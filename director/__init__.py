"""
Director worker: one uploaded image in, an approved multi-scene storyboard
and a batch of render jobs out.
"""
