QUESTION_TYPE_FILE_UPLOAD = 'file_upload'

ATTEMPT_STATUS_IN_PROGRESS = 'in_progress'
ATTEMPT_STATUS_FINALIZED = 'finalized'
ATTEMPT_STATUS_GRADED = 'graded'

FINALIZE_REASON_SUBMITTED = 'submitted'
FINALIZE_REASON_TIMED_OUT = 'timed_out'
