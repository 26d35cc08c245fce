"""boto3 resource discovery for the menus."""
from __future__ import annotations

import contextlib
import logging
from typing import Dict, Iterator, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound

from awsrat.config import Config
from awsrat.errors import AWSCallError, PrerequisiteError

# describe_tasks / describe_container_instances accept at most 100 ids
DESCRIBE_BATCH = 100


def _chunks(items: List[str], size: int = DESCRIBE_BATCH) -> Iterator[List[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _name_tag(tags: Optional[List[Dict]]) -> str:
    return next((t['Value'] for t in tags or [] if t.get('Key') == 'Name'), '')


@contextlib.contextmanager
def _aws_call(operation: str) -> Iterator[None]:
    try:
        yield
    except (ClientError, BotoCoreError) as e:
        logging.error(f"AWS call failed ({operation}): {e}")
        raise AWSCallError(operation, e) from e


# ----------------------------------------------------------------------------
# AWS calls
# ----------------------------------------------------------------------------
class AWSManager:
    def __init__(self, profile: Optional[str] = None, region: Optional[str] = None):
        try:
            self.session = boto3.Session(profile_name=profile, region_name=region)
        except ProfileNotFound as e:
            raise PrerequisiteError(f"AWS profile error: {e}") from e
        self.profile = profile
        self.region = region or self.session.region_name

    def client(self, service: str, region: Optional[str] = None):
        return self.session.client(service, region_name=region or self.region)

    def list_regions(self) -> List[str]:
        # describe_regions answers from any region
        ec2 = self.client('ec2', region=self.region or Config.BOOTSTRAP_REGION)
        with _aws_call('ec2:DescribeRegions'):
            resp = ec2.describe_regions(AllRegions=False)
        return sorted(r['RegionName'] for r in resp.get('Regions', []))

    # ------------------------------------------------------------------
    # EC2
    # ------------------------------------------------------------------
    def list_instances(self) -> List[Dict]:
        """Running instances as ``{'Id', 'Name', 'State', 'PrivateIp'}``, sorted by name."""
        ec2 = self.client('ec2')
        instances = []
        with _aws_call('ec2:DescribeInstances'):
            paginator = ec2.get_paginator('describe_instances')
            pages = paginator.paginate(
                Filters=[{'Name': 'instance-state-name', 'Values': ['running']}])
            for page in pages:
                for res in page.get('Reservations', []):
                    for i in res.get('Instances', []):
                        instances.append({
                            'Id': i['InstanceId'],
                            'Name': _name_tag(i.get('Tags')),
                            'State': i.get('State', {}).get('Name', ''),
                            'PrivateIp': i.get('PrivateIpAddress', ''),
                        })
        return sorted(instances, key=lambda x: (x['Name'].lower(), x['Id']))

    # ------------------------------------------------------------------
    # Load balancers
    # ------------------------------------------------------------------
    def list_load_balancers(self) -> List[Dict]:
        elb = self.client('elbv2')
        lbs = []
        with _aws_call('elbv2:DescribeLoadBalancers'):
            for page in elb.get_paginator('describe_load_balancers').paginate():
                for lb in page.get('LoadBalancers', []):
                    lbs.append({
                        'Name': lb.get('LoadBalancerName', ''),
                        'DNSName': lb['DNSName'],
                        'Arn': lb['LoadBalancerArn'],
                        'Type': lb.get('Type', ''),
                        'Scheme': lb.get('Scheme', ''),
                    })
        return lbs

    def list_listener_ports(self, lb_arn: str) -> List[int]:
        elb = self.client('elbv2')
        ports = set()
        with _aws_call('elbv2:DescribeListeners'):
            for page in elb.get_paginator('describe_listeners').paginate(LoadBalancerArn=lb_arn):
                for listener in page.get('Listeners', []):
                    if listener.get('Port'):
                        ports.add(int(listener['Port']))
        return sorted(ports)

    # ------------------------------------------------------------------
    # RDS
    # ------------------------------------------------------------------
    def list_db_instances(self) -> List[Dict]:
        """DB instances with an endpoint. Instances still being created have none."""
        rds = self.client('rds')
        dbs = []
        with _aws_call('rds:DescribeDBInstances'):
            for page in rds.get_paginator('describe_db_instances').paginate():
                for db in page.get('DBInstances', []):
                    endpoint = db.get('Endpoint') or {}
                    if not endpoint.get('Address'):
                        logging.debug(f"Skipping {db['DBInstanceIdentifier']}: no endpoint yet")
                        continue
                    dbs.append({
                        'Id': db['DBInstanceIdentifier'],
                        'Endpoint': endpoint['Address'],
                        'Port': int(endpoint.get('Port') or 0),
                        'Engine': db.get('Engine', ''),
                        'Status': db.get('DBInstanceStatus', ''),
                    })
        return dbs

    # ------------------------------------------------------------------
    # ECS
    # ------------------------------------------------------------------
    def list_clusters(self) -> List[str]:
        ecs = self.client('ecs')
        arns = []
        with _aws_call('ecs:ListClusters'):
            for page in ecs.get_paginator('list_clusters').paginate():
                arns.extend(page.get('clusterArns', []))
        return sorted(arns)

    def list_services(self) -> List[Dict]:
        """Every service of every cluster as ``{'Cluster', 'ClusterName', 'Service', 'Arn'}``."""
        ecs = self.client('ecs')
        services = []
        for cluster_arn in self.list_clusters():
            cluster_name = cluster_arn.split('/')[-1]
            logging.debug(f"Listing services of cluster {cluster_name}")
            with _aws_call('ecs:ListServices'):
                pages = ecs.get_paginator('list_services').paginate(cluster=cluster_arn)
                for page in pages:
                    for service_arn in page.get('serviceArns', []):
                        services.append({
                            'Cluster': cluster_arn,
                            'ClusterName': cluster_name,
                            'Service': service_arn.split('/')[-1],
                            'Arn': service_arn,
                        })
        return services

    def list_containers(self) -> List[Dict]:
        """Containers running on EC2 container instances.

        Each entry has ``Service``, ``Container``, ``InstanceId``, ``RuntimeId``
        and ``Cluster``. Containers without a runtime id (not started yet, or on
        Fargate) cannot be reached with docker exec and are left out.
        """
        ecs = self.client('ecs')
        containers = []
        for cluster_arn in self.list_clusters():
            logging.debug(f"Listing container instances of {cluster_arn}")
            with _aws_call('ecs:ListContainerInstances'):
                ci_arns = []
                pages = ecs.get_paginator('list_container_instances').paginate(cluster=cluster_arn)
                for page in pages:
                    ci_arns.extend(page.get('containerInstanceArns', []))
            if not ci_arns:
                continue

            instance_ids = {}
            with _aws_call('ecs:DescribeContainerInstances'):
                for batch in _chunks(ci_arns):
                    resp = ecs.describe_container_instances(cluster=cluster_arn, containerInstances=batch)
                    for ci in resp.get('containerInstances', []):
                        instance_ids[ci['containerInstanceArn']] = ci.get('ec2InstanceId', '')

            for ci_arn in ci_arns:
                ec2_id = instance_ids.get(ci_arn)
                if not ec2_id:
                    continue
                with _aws_call('ecs:ListTasks'):
                    task_arns = []
                    pages = ecs.get_paginator('list_tasks').paginate(
                        cluster=cluster_arn, containerInstance=ci_arn)
                    for page in pages:
                        task_arns.extend(page.get('taskArns', []))
                if not task_arns:
                    continue
                with _aws_call('ecs:DescribeTasks'):
                    for batch in _chunks(task_arns):
                        resp = ecs.describe_tasks(cluster=cluster_arn, tasks=batch)
                        for task in resp.get('tasks', []):
                            service = task.get('group', '')
                            if service.startswith('service:'):
                                service = service[len('service:'):]
                            for c in task.get('containers', []):
                                if not c.get('runtimeId'):
                                    continue
                                containers.append({
                                    'Service': service,
                                    'Container': c.get('name', ''),
                                    'InstanceId': ec2_id,
                                    'RuntimeId': c['runtimeId'],
                                    'Cluster': cluster_arn,
                                })
        return containers

    def force_new_deployment(self, cluster: str, service: str) -> Dict:
        ecs = self.client('ecs')
        with _aws_call('ecs:UpdateService'):
            resp = ecs.update_service(cluster=cluster, service=service, forceNewDeployment=True)
        logging.info(f"Forced new deployment of {service} in {cluster}")
        return resp.get('service', {})

    def service_status(self, cluster: str, service: str, events: int = Config.SERVICE_EVENTS_SHOWN) -> Dict:
        """Deployments and the latest ``events`` events of one service."""
        ecs = self.client('ecs')
        with _aws_call('ecs:DescribeServices'):
            resp = ecs.describe_services(cluster=cluster, services=[service])
        found = resp.get('services', [])
        if not found:
            failures = resp.get('failures', [])
            reason = failures[0].get('reason', 'unknown') if failures else 'unknown'
            raise AWSCallError('ecs:DescribeServices', Exception(f"service {service} not found ({reason})"))
        svc = found[0]
        return {
            'deployments': svc.get('deployments', []),
            'events': svc.get('events', [])[:events],
        }

    # ------------------------------------------------------------------
    # CloudWatch Logs
    # ------------------------------------------------------------------
    def list_log_groups(self, prefix: Optional[str] = None) -> List[str]:
        logs = self.client('logs')
        params = {}
        if prefix:
            params['logGroupNamePrefix'] = prefix
        names = []
        with _aws_call('logs:DescribeLogGroups'):
            for page in logs.get_paginator('describe_log_groups').paginate(**params):
                names.extend(lg['logGroupName'] for lg in page.get('logGroups', []))
        return names

    def filter_log_events(self, log_group: str, filter_pattern: Optional[str] = None,
                          start_time: Optional[int] = None, limit: int = 100) -> List[Dict]:
        """First ``limit`` matching events from ``start_time`` on (epoch millis), oldest first.

        A page can come back empty while the service is still scanning, so
        ``nextToken`` is followed until enough events arrive or it runs out.
        """
        logs = self.client('logs')
        params = {'logGroupName': log_group, 'limit': limit}
        if filter_pattern:
            params['filterPattern'] = filter_pattern
        if start_time:
            params['startTime'] = start_time
        events = []
        with _aws_call('logs:FilterLogEvents'):
            while len(events) < limit:
                response = logs.filter_log_events(**params)
                events.extend(
                    {
                        'timestamp': event.get('timestamp', 0),
                        'message': event.get('message', ''),
                        'logStreamName': event.get('logStreamName', ''),
                    }
                    for event in response.get('events', [])
                )
                token = response.get('nextToken')
                if not token:
                    break
                params['nextToken'] = token
                params['limit'] = limit - len(events)
        return events[:limit]
