"""
SendFlow Workflows Controller
Workflow CRUD, enrollment, execution visibility, A/B tests and course cycles
"""
import logging

from flask import Blueprint, current_app, jsonify, request

from sendflow.services.automation.ab_testing import get_ab_test_controller
from sendflow.services.automation.course_cycle import get_course_cycle_controller
from sendflow.services.automation.definitions import get_workflow_service
from sendflow.services.automation.enrollment import get_enrollment_manager

logger = logging.getLogger(__name__)

workflow_bp = Blueprint('workflow', __name__, url_prefix='/api/workflows')


def _json():
    return request.get_json(silent=True) or {}


def _bool_arg(name):
    value = request.args.get(name)
    if value is None:
        return None
    return value.lower() in ('1', 'true', 'yes')


# ==================== WORKFLOWS ====================

@workflow_bp.route('', methods=['GET'])
def api_list():
    """Get all workflows"""
    workflows = get_workflow_service().list(active=_bool_arg('active'))
    return jsonify({'success': True, 'workflows': [w.to_dict(include_graph=False) for w in workflows]})


@workflow_bp.route('', methods=['POST'])
def api_create():
    """Create new workflow"""
    workflow = get_workflow_service().create(_json())
    return jsonify({
        'success': True,
        'workflow': workflow.to_dict(),
        'message': 'Workflow created successfully'
    }), 201


@workflow_bp.route('/<workflow_id>', methods=['GET'])
def api_get(workflow_id):
    workflow = get_workflow_service().get(workflow_id)
    return jsonify({'success': True, 'workflow': workflow.to_dict()})


@workflow_bp.route('/<workflow_id>', methods=['PUT'])
def api_update(workflow_id):
    """Update workflow"""
    workflow = get_workflow_service().update(workflow_id, _json())
    return jsonify({'success': True, 'workflow': workflow.to_dict(), 'message': 'Workflow updated'})


@workflow_bp.route('/<workflow_id>', methods=['DELETE'])
def api_delete(workflow_id):
    """Delete workflow with its executions"""
    result = get_enrollment_manager().delete_workflow(workflow_id)
    return jsonify({'success': True, 'message': 'Workflow deleted', **result})


@workflow_bp.route('/<workflow_id>/validate', methods=['GET'])
def api_validate(workflow_id):
    errors = get_workflow_service().validate(workflow_id)
    return jsonify({'success': True, 'valid': not errors, 'errors': [e.to_dict() for e in errors]})


@workflow_bp.route('/<workflow_id>/activate', methods=['POST'])
def api_activate(workflow_id):
    """Activate workflow"""
    workflow = get_workflow_service().activate(workflow_id)
    return jsonify({'success': True, 'workflow': workflow.to_dict(include_graph=False),
                    'message': 'Workflow activated'})


@workflow_bp.route('/<workflow_id>/deactivate', methods=['POST'])
def api_deactivate(workflow_id):
    """Pause workflow; in-flight executions keep their schedule"""
    workflow = get_workflow_service().deactivate(workflow_id)
    return jsonify({'success': True, 'workflow': workflow.to_dict(include_graph=False),
                    'message': 'Workflow deactivated'})


# ==================== ENROLLMENT ====================

@workflow_bp.route('/<workflow_id>/enroll', methods=['POST'])
def api_enroll(workflow_id):
    data = _json()
    contact_id = data.get('contact_id')
    if not contact_id:
        return jsonify({'success': False, 'error': 'contact_id is required'}), 400

    execution = get_enrollment_manager().enroll(workflow_id, contact_id, data.get('trigger_data'))
    return jsonify({'success': True, 'execution': execution.to_dict()})


@workflow_bp.route('/<workflow_id>/enroll/bulk', methods=['POST'])
def api_enroll_bulk(workflow_id):
    contact_ids = _json().get('contact_ids') or []
    if not isinstance(contact_ids, list):
        return jsonify({'success': False, 'error': 'contact_ids must be a list'}), 400

    result = get_enrollment_manager().enroll_bulk(workflow_id, contact_ids)
    return jsonify({'success': True, **result})


@workflow_bp.route('/<workflow_id>/enroll/filter', methods=['POST'])
def api_enroll_filter(workflow_id):
    """Enroll every contact matching a filter, in the background by default"""
    data = _json()
    contact_filter = data.get('filter') or {'type': 'all'}
    batch_size = int(data.get('batch_size') or current_app.config.get('BULK_ENROLL_BATCH_SIZE', 50))

    if data.get('async', True):
        from sendflow.tasks.workflow_tasks import process_bulk_enrollment
        task = process_bulk_enrollment.delay(workflow_id, contact_filter, batch_size)
        return jsonify({'success': True, 'task_id': task.id, 'message': 'Enrollment started'}), 202

    result = get_enrollment_manager().enroll_all_by_filter(workflow_id, contact_filter, batch_size=batch_size)
    return jsonify({'success': True, **result})


# ==================== EXECUTIONS ====================

@workflow_bp.route('/<workflow_id>/executions/summary', methods=['GET'])
def api_status_summary(workflow_id):
    get_workflow_service().get(workflow_id)
    return jsonify({'success': True, 'summary': get_enrollment_manager().get_status_summary(workflow_id)})


@workflow_bp.route('/<workflow_id>/nodes/<node_id>/executions', methods=['GET'])
def api_executions_at_node(workflow_id, node_id):
    limit = min(int(request.args.get('limit', 100)), 1000)
    executions = get_enrollment_manager().get_executions_at_node(workflow_id, node_id, limit=limit)
    return jsonify({'success': True, 'executions': executions, 'count': len(executions)})


@workflow_bp.route('/executions/<execution_id>/cancel', methods=['POST'])
def api_cancel_execution(execution_id):
    reason = _json().get('reason') or 'Cancelled by operator'
    execution = get_enrollment_manager().cancel(execution_id, reason)
    return jsonify({'success': True, 'execution': execution.to_dict()})


@workflow_bp.route('/executions/<execution_id>/skip-delay', methods=['POST'])
def api_skip_delay(execution_id):
    execution = get_enrollment_manager().skip_delay(execution_id)
    return jsonify({'success': True, 'execution': execution.to_dict()})


# ==================== A/B TESTS ====================

@workflow_bp.route('/<workflow_id>/nodes/<node_id>/ab-test', methods=['GET'])
def api_get_ab_test(workflow_id, node_id):
    test = get_ab_test_controller().get_test(workflow_id, node_id)
    return jsonify({'success': True, 'ab_test': test.to_dict() if test else None})


@workflow_bp.route('/<workflow_id>/nodes/<node_id>/ab-test', methods=['PUT'])
def api_save_ab_test(workflow_id, node_id):
    get_workflow_service().get(workflow_id)
    test = get_ab_test_controller().save_ab_test(workflow_id, node_id, _json())
    return jsonify({'success': True, 'ab_test': test.to_dict()})


@workflow_bp.route('/<workflow_id>/nodes/<node_id>/ab-test', methods=['DELETE'])
def api_delete_ab_test(workflow_id, node_id):
    get_ab_test_controller().delete_ab_test(workflow_id, node_id)
    return jsonify({'success': True, 'message': 'A/B test deleted'})


@workflow_bp.route('/<workflow_id>/nodes/<node_id>/ab-test/winner', methods=['POST'])
def api_select_winner(workflow_id, node_id):
    variant_id = _json().get('variant_id')
    if not variant_id:
        return jsonify({'success': False, 'error': 'variant_id is required'}), 400
    test = get_ab_test_controller().select_winner(workflow_id, node_id, variant_id)
    return jsonify({'success': True, 'ab_test': test.to_dict()})


@workflow_bp.route('/<workflow_id>/nodes/<node_id>/ab-test/reset', methods=['POST'])
def api_reset_ab_test(workflow_id, node_id):
    test = get_ab_test_controller().reset_stats(workflow_id, node_id)
    return jsonify({'success': True, 'ab_test': test.to_dict()})


@workflow_bp.route('/<workflow_id>/nodes/<node_id>/ab-test/stats', methods=['GET'])
def api_ab_test_stats(workflow_id, node_id):
    stats = get_ab_test_controller().get_variant_stats(workflow_id, node_id)
    return jsonify({'success': True, **stats})


# ==================== COURSE CYCLES ====================

@workflow_bp.route('/course-cycles', methods=['GET'])
def api_list_course_cycles():
    configs = get_course_cycle_controller().list_configs()
    return jsonify({'success': True, 'configs': [c.to_dict() for c in configs]})


@workflow_bp.route('/course-cycles', methods=['POST'])
def api_create_course_cycle():
    config = get_course_cycle_controller().save_config(_json())
    return jsonify({'success': True, 'config': config.to_dict()}), 201


@workflow_bp.route('/course-cycles/<config_id>', methods=['GET'])
def api_get_course_cycle(config_id):
    config = get_course_cycle_controller().get_config(config_id)
    return jsonify({'success': True, 'config': config.to_dict()})


@workflow_bp.route('/course-cycles/<config_id>', methods=['PUT'])
def api_update_course_cycle(config_id):
    config = get_course_cycle_controller().save_config(_json(), config_id=config_id)
    return jsonify({'success': True, 'config': config.to_dict()})


@workflow_bp.route('/course-cycles/<config_id>', methods=['DELETE'])
def api_delete_course_cycle(config_id):
    get_course_cycle_controller().delete_config(config_id)
    return jsonify({'success': True, 'message': 'Course cycle deleted'})


@workflow_bp.route('/course-cycles/<config_id>/emails', methods=['POST'])
def api_save_course_email(config_id):
    email = get_course_cycle_controller().save_email(config_id, _json())
    return jsonify({'success': True, 'email': email.to_dict()})
