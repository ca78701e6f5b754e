from sendflow.models.workflows import (
    Workflow, WorkflowVersion, WorkflowExecution, DeliveryReceipt, EmailTemplate
)
from sendflow.models.contacts import (
    Contact, Tag, ContactTag, ContactActivity, Purchase, Segment
)
from sendflow.models.ab_tests import WorkflowNodeABTest, ABTestVariant
from sendflow.models.course_cycles import Course, CourseCycleConfig, CourseCycleEmail

__all__ = [
    'Workflow', 'WorkflowVersion', 'WorkflowExecution', 'DeliveryReceipt', 'EmailTemplate',
    'Contact', 'Tag', 'ContactTag', 'ContactActivity', 'Purchase', 'Segment',
    'WorkflowNodeABTest', 'ABTestVariant',
    'Course', 'CourseCycleConfig', 'CourseCycleEmail',
]
