"""Graph builders shared by the tests"""


def node(node_id, node_type, **data):
    return {'id': node_id, 'type': node_type, 'data': data}


def edge(source, target, handle=None):
    raw = {'id': f"{source}-{target}", 'source': source, 'target': target}
    if handle:
        raw['id'] = f"{source}-{target}-{handle}"
        raw['sourceHandle'] = handle
    return raw


def chain(*node_ids):
    return [edge(a, b) for a, b in zip(node_ids, node_ids[1:])]


def email(node_id, subject='Hello {{first_name}}', content='<p>Hi <a href="https://example.com/offer">offer</a></p>'):
    return node(node_id, 'email', mode='custom', subject=subject, content=content)
