class RequirementError(Exception):
	pass


class DiskError(Exception):
	pass


class SysCallError(Exception):
	def __init__(self, message: str, exit_code: int | None = None, worker_log: bytes = b'') -> None:
		super().__init__(message)
		self.message = message
		self.exit_code = exit_code
		self.worker_log = worker_log


class LuksError(DiskError):
	pass


class LuksOperationError(LuksError):
	"""
	A cryptsetup invocation backing a mutating operation exited non-zero.
	The captured tool output is kept for diagnostics.
	"""

	def __init__(self, message: str, exit_code: int | None = None, output: str = '') -> None:
		super().__init__(message)
		self.exit_code = exit_code
		self.output = output


class LuksPreconditionError(LuksError):
	pass


class LuksDumpError(LuksError):
	pass


class DeviceLookupError(DiskError):
	pass
